"""Plain-text prompts sent to users during verification.

Channel-specific formatting is left to the Notifier implementation.
"""

from typing import List, Optional, Sequence, Tuple

from meterverify.config import (
    DEFAULT_SETTINGS,
    RETRY_TIPS,
    OCRSettings,
    is_good_confidence,
    should_warn_low_confidence,
)
from meterverify.validation import format_reading

Button = Tuple[str, str]  # (id, title)


def _bullets(lines: Sequence[str]) -> str:
    return "\n".join(f"- {line}" for line in lines)


def photo_request(kind: str, attempt_count: int, max_attempts: int) -> str:
    if attempt_count == 0:
        what = "current" if kind == "start" else "final"
        return (
            f"Please take a photo of the {what} kWh reading on the charger display.\n\n"
            + _bullets(
                [RETRY_TIPS["lighting"], RETRY_TIPS["focus"], RETRY_TIPS["visible"], RETRY_TIPS["numbers"]]
            )
        )
    return (
        f"Let's try again (attempt {attempt_count + 1} of {max_attempts}).\n\n"
        + _bullets([RETRY_TIPS["lighting"], RETRY_TIPS["focus"], RETRY_TIPS["steady"]])
    )


def confidence_note(confidence: float, settings: OCRSettings = DEFAULT_SETTINGS) -> str:
    if confidence <= 0:
        return "Manual entry"
    if is_good_confidence(confidence, settings):
        return f"High confidence ({confidence:.0f}%)"
    if should_warn_low_confidence(confidence, settings):
        return f"Low confidence ({confidence:.0f}%) - please verify carefully"
    return f"Confidence: {confidence:.0f}%"


def reading_confirmation(
    kind: str,
    reading: float,
    confidence: float,
    consumption: Optional[float] = None,
    warnings: Optional[List[str]] = None,
    processing_time_ms: Optional[int] = None,
    settings: OCRSettings = DEFAULT_SETTINGS,
) -> str:
    label = "Start" if kind == "start" else "Final"
    lines = [
        f"{label} reading: {format_reading(reading)}",
        confidence_note(confidence, settings),
    ]
    if processing_time_ms:
        lines.append(f"Processed in {processing_time_ms / 1000:.1f}s")
    if consumption is not None:
        lines.append(f"Consumption: {consumption:.2f} kWh")
    text = "\n".join(lines)
    if warnings:
        text += "\n\nNotices:\n" + _bullets(warnings)
    return text + "\n\nIs this correct?"


def confirmation_buttons(kind: str) -> List[Button]:
    return [
        (f"confirm_{kind}_reading", "Yes, correct"),
        (f"retake_{kind}_photo", "Retake photo"),
    ]


def read_failure(error: str, suggestions: Sequence[str], attempt_count: int, max_attempts: int) -> str:
    text = f"Couldn't read the display.\n\n{error}"
    if suggestions:
        text += "\n\nTips:\n" + _bullets(suggestions)
    return text + f"\n\nAttempt {attempt_count} of {max_attempts}"


def low_confidence(confidence: float, attempt_count: int, max_attempts: int) -> str:
    return (
        f"We detected a reading but confidence is low ({confidence:.0f}%).\n\n"
        + _bullets([RETRY_TIPS["lighting"], RETRY_TIPS["focus"], RETRY_TIPS["steady"]])
        + f"\n\nAttempt {attempt_count} of {max_attempts}"
    )


def invalid_reading(error: str) -> str:
    return f"Validation issue: {error}\n\nPlease retake the photo."


def provider_unavailable(quota: bool) -> str:
    if quota:
        return "Reading service temporarily unavailable. Please type the kWh reading instead."
    return "Reading service authentication error. Please type the kWh reading instead."


def manual_entry_prompt(kind: str, max_attempts: int) -> str:
    what = "current" if kind == "start" else "final"
    return (
        f"We couldn't read the display after {max_attempts} attempts.\n\n"
        f"Please type the {what} kWh reading shown on the display (example: 1245.8)."
    )


def invalid_manual_entry(error: str) -> str:
    return f"Invalid reading: {error}\n\nPlease enter a valid kWh reading."


NO_READING_TO_CONFIRM = "No reading to confirm. Please take a photo first."
SESSION_NOT_FOUND = "Your charging session has expired or was cancelled. Please start a new session."
VERIFICATION_EXPIRED = "Verification expired. Please start again."
