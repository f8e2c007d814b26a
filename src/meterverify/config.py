"""Tunable thresholds for meter reading OCR and verification.

All values can be overridden per instance (``OCRSettings(max_attempts=5)``)
or from the environment with :meth:`OCRSettings.from_env`.
"""

import dataclasses
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OCRSettings:
    """Configuration for extraction, validation and the verification flow."""

    # Reading validation
    valid_min: float = 10.0
    valid_max: float = 999999.0
    max_decimal_places: int = 3

    # Consumption validation (end - start)
    consumption_min: float = 0.1
    consumption_max: float = 200.0

    # Confidence thresholds (0-100)
    min_ocr_confidence: float = 60.0
    min_display_confidence: float = 70.0
    good_confidence: float = 85.0
    low_confidence_hint: float = 50.0

    # Verification flow
    max_attempts: int = 3
    state_ttl_seconds: float = 30 * 60.0
    cleanup_interval_seconds: float = 5 * 60.0
    submission_timeout_seconds: float = 30.0

    # Candidate scoring
    keyword_window: int = 20
    typical_min: float = 100.0
    typical_max: float = 10000.0

    # Physical plausibility
    conversion_efficiency: float = 0.95
    theoretical_max_tolerance: float = 1.15
    battery_tolerance: float = 1.05
    saturation_ratio: float = 0.98
    min_efficiency: float = 0.60
    min_context_minutes: float = 1.0
    default_charger_power_kw: float = 50.0

    # Preprocessing working sizes (width, height)
    standard_size: Tuple[int, int] = (1600, 1200)
    aggressive_size: Tuple[int, int] = (1200, 800)
    adaptive_size: Tuple[int, int] = (1000, 1000)
    binarize_threshold: int = 128

    # API usage monitoring
    free_monthly_quota: int = 1000
    cost_per_request: float = 0.0015
    quota_warning_ratio: float = 0.9

    @classmethod
    def from_env(
        cls,
        prefix: str = "METER_OCR_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> "OCRSettings":
        """
        Build settings with overrides taken from environment variables.

        ``METER_OCR_MAX_ATTEMPTS=5`` overrides ``max_attempts``. Size
        fields take ``WIDTHxHEIGHT`` values.

        Args:
            prefix: Variable name prefix
            environ: Mapping to read instead of ``os.environ``

        Returns:
            OCRSettings instance

        Raises:
            ValueError: If a variable cannot be converted to the field type
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, object] = {}

        for f in dataclasses.fields(cls):
            key = prefix + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key].strip()
            default = f.default
            try:
                if isinstance(default, tuple):
                    w, h = raw.lower().split("x")
                    overrides[f.name] = (int(w), int(h))
                elif isinstance(default, int):
                    overrides[f.name] = int(raw)
                else:
                    overrides[f.name] = float(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {key}: {raw!r}") from e

        return cls(**overrides)

    def with_overrides(self, **kwargs) -> "OCRSettings":
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **kwargs)


DEFAULT_SETTINGS = OCRSettings()


# ---------------------------------------------------------------------------
# Confidence levels
# ---------------------------------------------------------------------------


class ConfidenceLevel(Enum):
    """How much a reported OCR confidence can be trusted."""

    HIGH = "high"  # At or above good_confidence
    MEDIUM = "medium"  # Acceptable, show as-is
    LOW = "low"  # Ask the user to verify carefully


def confidence_level(
    confidence: float, settings: OCRSettings = DEFAULT_SETTINGS
) -> ConfidenceLevel:
    if confidence >= settings.good_confidence:
        return ConfidenceLevel.HIGH
    if confidence >= settings.min_display_confidence:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def is_good_confidence(confidence: float, settings: OCRSettings = DEFAULT_SETTINGS) -> bool:
    return confidence >= settings.good_confidence


def should_warn_low_confidence(
    confidence: float, settings: OCRSettings = DEFAULT_SETTINGS
) -> bool:
    return confidence < settings.min_display_confidence


# Photo quality tips, keyed so callers can pick the relevant ones
RETRY_TIPS = {
    "lighting": "Use better lighting - avoid shadows and glare",
    "focus": "Focus clearly on the kWh display numbers",
    "steady": "Hold the camera steady and move closer to the display",
    "visible": "Ensure the entire reading is visible in the frame",
    "numbers": "Make sure all digits are clear and not blurred",
    "angle": "Take the photo straight-on, avoid angles",
    "background": "Minimize background clutter around the display",
}
