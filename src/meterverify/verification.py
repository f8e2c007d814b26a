"""Per-user meter reading verification workflow.

States (per user):

    AWAITING_PHOTO --(read ok, confidence >= threshold)--> AWAITING_CONFIRMATION
    AWAITING_PHOTO --(failure, attempts < max)--> AWAITING_PHOTO
    AWAITING_PHOTO --(failure, attempts >= max)--> MANUAL_ENTRY_REQUIRED
    MANUAL_ENTRY_REQUIRED --(valid typed reading)--> AWAITING_CONFIRMATION
    AWAITING_CONFIRMATION --confirm--> (removed)
    AWAITING_CONFIRMATION --retake--> AWAITING_PHOTO (attempt count kept)

Any state is removed by cancel, or once older than the TTL.

Classes:
    VerificationState        - Mutable per-user record
    VerificationStore        - Keyed store owning all states
    PhotoVerificationService - Public workflow operations

Concurrency: every store operation is atomic, but a submission reads the
state, awaits OCR, then writes it back. Two concurrent submissions for
the same user race on that entry and the last write wins; a submission
in flight during cancel() can write its state back. Callers that need
stronger guarantees must serialise submissions per user themselves.
"""

import asyncio
import dataclasses
import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from meterverify import messages
from meterverify.config import DEFAULT_SETTINGS, OCRSettings
from meterverify.errors import MissingStartReadingError
from meterverify.ocr import OCRErrorKind
from meterverify.pipeline import KwhReader, OCRResult, ReadProgress, retry_suggestions
from meterverify.validation import ReadingValidator

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class VerificationKind(Enum):
    START = "start"
    END = "end"


class ReadingProvider(Enum):
    VISION = "vision"
    MANUAL = "manual"


class VerificationPhase(Enum):
    AWAITING_PHOTO = "awaiting_photo"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    MANUAL_ENTRY_REQUIRED = "manual_entry_required"


@dataclass
class VerificationState:
    """Verification progress for one user."""

    user_id: str
    session_id: str
    kind: VerificationKind
    created_at: datetime
    attempt_count: int = 0  # Photo and manual submissions so far
    phase: VerificationPhase = VerificationPhase.AWAITING_PHOTO
    last_reading: Optional[float] = None  # Awaiting confirmation
    last_confidence: Optional[float] = None
    provider: ReadingProvider = ReadingProvider.VISION
    consumption: Optional[float] = None  # End readings only
    warnings: List[str] = field(default_factory=list)
    manual_only: bool = False  # Photos no longer accepted for this flow

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def is_expired(self, now: datetime, ttl_seconds: float) -> bool:
        return self.age(now).total_seconds() > ttl_seconds


class VerificationStore:
    """
    Keyed store of verification states, one per user.

    ``put`` overwrites any existing state for the user (last writer wins).
    Reads through ``get`` treat expired entries as absent and drop them.
    """

    def __init__(self, ttl_seconds: float, clock: Clock = utcnow):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._states: Dict[str, VerificationState] = {}
        self._lock = threading.Lock()

    def put(self, state: VerificationState) -> None:
        with self._lock:
            self._states[state.user_id] = state

    def get(self, user_id: str) -> Optional[VerificationState]:
        with self._lock:
            state = self._states.get(user_id)
            if state is None:
                return None
            if state.is_expired(self.clock(), self.ttl_seconds):
                del self._states[user_id]
                log.info("Dropped expired verification state for %s", user_id)
                return None
            return state

    def peek(self, user_id: str) -> Optional[VerificationState]:
        """Return the stored state without expiry handling."""
        with self._lock:
            return self._states.get(user_id)

    def pop(self, user_id: str) -> Optional[VerificationState]:
        with self._lock:
            return self._states.pop(user_id, None)

    def sweep(self) -> List[str]:
        """
        Remove every expired state.

        Idempotent and safe to run alongside put(): the check and the
        delete happen under one lock acquisition.

        Returns:
            User ids whose states were removed
        """
        now = self.clock()
        with self._lock:
            expired = [
                uid for uid, s in self._states.items() if s.is_expired(now, self.ttl_seconds)
            ]
            for uid in expired:
                del self._states[uid]
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, user_id: str) -> bool:
        return self.get(user_id) is not None


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class ChargingSession:
    """The parts of a charging session record used for verification."""

    session_id: str
    start_reading: Optional[float] = None
    started_at: Optional[datetime] = None
    charger_power_kw: Optional[float] = None
    battery_capacity_kwh: Optional[float] = None


class SessionRepository(Protocol):
    """Persistent store of charging sessions."""

    async def get_session(self, session_id: str) -> Optional[ChargingSession]:
        ...

    async def set_verification_status(self, session_id: str, status: str) -> None:
        ...

    async def save_start_reading(
        self, session_id: str, reading: float, confidence: float, attempts: int
    ) -> None:
        ...

    async def save_end_reading(
        self,
        session_id: str,
        reading: float,
        confidence: float,
        attempts: int,
        consumption: float,
    ) -> None:
        ...

    async def mark_manual_entry(self, session_id: str) -> None:
        ...


class Notifier(Protocol):
    """Delivers prompts to a user over some messaging channel."""

    async def send_text(self, user_id: str, text: str) -> None:
        ...

    async def send_buttons(
        self, user_id: str, text: str, buttons: List[Tuple[str, str]]
    ) -> None:
        ...


class NullNotifier:
    """Notifier that only logs, for headless use."""

    async def send_text(self, user_id: str, text: str) -> None:
        log.debug("Message to %s: %s", user_id, text)

    async def send_buttons(
        self, user_id: str, text: str, buttons: List[Tuple[str, str]]
    ) -> None:
        log.debug("Message to %s: %s %s", user_id, text, [b[0] for b in buttons])


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PhotoOutcome(Enum):
    """What the caller should do after a photo submission."""

    ACCEPTED = "accepted"  # Reading awaits confirm() or retake()
    RETRY = "retry"  # Transient failure or low confidence, send another photo
    INVALID_READING = "invalid_reading"  # Read fine but failed validation
    MANUAL_ENTRY_REQUIRED = "manual_entry_required"  # Attempts exhausted
    PROVIDER_ERROR = "provider_error"  # OCR auth/quota failure, not retried
    NO_ACTIVE_VERIFICATION = "no_active_verification"  # Expired or never started
    NOT_EXPECTED = "not_expected"  # Reading already awaits confirmation


@dataclass
class PhotoResult:
    """Typed result of submit_photo()."""

    outcome: PhotoOutcome
    message: str
    reading: Optional[float] = None
    confidence: Optional[float] = None
    should_retry: bool = False
    processing_time_ms: Optional[int] = None
    consumption: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome is PhotoOutcome.ACCEPTED


@dataclass
class ManualEntryResult:
    """Result of submit_manual_reading(); truthy when accepted."""

    accepted: bool
    message: str
    reading: Optional[float] = None
    consumption: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.accepted


@dataclass
class ConsumptionCheck:
    """End reading checked against the session's start reading."""

    is_valid: bool
    consumption: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class OCRMetrics:
    """Running OCR usage counters."""

    total_attempts: int = 0
    successful_reads: int = 0
    average_confidence: float = 0.0
    average_processing_time_ms: float = 0.0
    ocr_calls_today: int = 0

    def record_attempt(self, processing_time_ms: int, ocr_calls: int) -> None:
        self.total_attempts += 1
        self.ocr_calls_today += ocr_calls
        n = self.total_attempts
        self.average_processing_time_ms += (processing_time_ms - self.average_processing_time_ms) / n

    def record_success(self, confidence: float) -> None:
        self.successful_reads += 1
        n = self.successful_reads
        self.average_confidence += (confidence - self.average_confidence) / n

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return 100 * self.successful_reads / self.total_attempts


_MANUAL_READING = re.compile(r"\s*([+-]?\d+(?:\.\d+)?)\s*(?:kwh)?\s*", re.IGNORECASE)


def parse_manual_reading(text: str) -> Optional[float]:
    """Parse a typed reading such as ``1245.8`` or ``1245.8 kWh``."""
    match = _MANUAL_READING.fullmatch(text or "")
    if not match:
        return None
    return float(match.group(1))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PhotoVerificationService:
    """
    Drives start/end meter reading verification for many users.

    Args:
        reader: OCR pipeline used for photo submissions.
        sessions: Charging session repository.
        notifier: Prompt delivery (default NullNotifier).
        settings: Thresholds, attempt cap, TTL and timeout.
        clock: Returns the current aware datetime (injectable for tests).
    """

    STATUS_AWAITING = {
        VerificationKind.START: "awaiting_start_photo",
        VerificationKind.END: "awaiting_end_photo",
    }
    STATUS_START_VERIFIED = "start_verified"
    STATUS_COMPLETED = "completed"

    def __init__(
        self,
        reader: KwhReader,
        sessions: SessionRepository,
        notifier: Optional[Notifier] = None,
        settings: OCRSettings = DEFAULT_SETTINGS,
        clock: Clock = utcnow,
    ):
        self.reader = reader
        self.sessions = sessions
        self.notifier = notifier or NullNotifier()
        self.settings = settings
        self.clock = clock
        self.validator = ReadingValidator(settings)
        self.store = VerificationStore(settings.state_ttl_seconds, clock)
        self.metrics = OCRMetrics()
        self._cleanup_task: Optional[asyncio.Task] = None

    # -- flow start -------------------------------------------------------

    async def start_verification(
        self, user_id: str, session_id: str, kind: VerificationKind
    ) -> None:
        """
        Begin capturing a start or end reading, replacing any prior state.

        Raises:
            MissingStartReadingError: End verification for a session with
                no confirmed start reading
        """
        if kind is VerificationKind.END:
            session = await self.sessions.get_session(session_id)
            if session is None or session.start_reading is None:
                raise MissingStartReadingError(f"No start reading found for session {session_id}")

        self.store.put(
            VerificationState(
                user_id=user_id,
                session_id=session_id,
                kind=kind,
                created_at=self.clock(),
            )
        )
        await self.sessions.set_verification_status(session_id, self.STATUS_AWAITING[kind])
        await self.notifier.send_text(
            user_id, messages.photo_request(kind.value, 0, self.settings.max_attempts)
        )
        log.info("%s photo requested for %s (session %s)", kind.value, user_id, session_id)

    # -- photo submission -------------------------------------------------

    async def submit_photo(self, user_id: str, image_bytes: bytes) -> PhotoResult:
        """
        Process a meter photo for the user's active verification.

        Returns:
            PhotoResult whose outcome tells the caller what happens next
        """
        state = self.store.get(user_id)
        if state is None:
            return PhotoResult(
                outcome=PhotoOutcome.NO_ACTIVE_VERIFICATION,
                message="No active verification. Please start again.",
            )
        if state.phase is VerificationPhase.AWAITING_CONFIRMATION:
            return PhotoResult(
                outcome=PhotoOutcome.NOT_EXPECTED,
                message="A reading is awaiting confirmation. Confirm it or retake the photo.",
                reading=state.last_reading,
                confidence=state.last_confidence,
            )
        if state.manual_only or state.attempt_count >= self.settings.max_attempts:
            return await self._fallback_to_manual_entry(state)

        state.attempt_count += 1
        self.store.put(state)
        log.info(
            "Processing %s photo for %s (attempt %d, %d bytes)",
            state.kind.value,
            user_id,
            state.attempt_count,
            len(image_bytes),
        )

        result = await self._read_with_timeout(image_bytes)
        self.metrics.record_attempt(result.processing_time_ms, result.ocr_calls)
        self._check_quota()

        if result.error_kind is not None and result.error_kind.is_provider_fatal:
            return await self._handle_provider_error(state, result)

        if not result.success or result.reading is None:
            if result.error_kind is OCRErrorKind.INVALID_READING:
                return await self._handle_invalid_reading(
                    state, result.error or "Invalid reading", result
                )
            if result.error_kind is OCRErrorKind.LOW_CONFIDENCE and result.reading is not None:
                return await self._handle_low_confidence(state, result.confidence or 0.0, result)
            return await self._handle_read_failure(state, result)

        confidence = result.confidence or 0.0
        check = ConsumptionCheck(is_valid=True)
        if state.kind is VerificationKind.END:
            check = await self._validate_consumption(state.session_id, result.reading)
            if not check.is_valid:
                return await self._handle_invalid_reading(
                    state, check.error or "Validation failed", result
                )

        self.metrics.record_success(confidence)
        state.last_reading = result.reading
        state.last_confidence = confidence
        state.provider = ReadingProvider.VISION
        state.consumption = check.consumption
        state.warnings = list(check.warnings)
        state.phase = VerificationPhase.AWAITING_CONFIRMATION
        self.store.put(state)

        await self._send_confirmation(state, result.processing_time_ms)
        return PhotoResult(
            outcome=PhotoOutcome.ACCEPTED,
            message="Reading detected. Awaiting confirmation.",
            reading=result.reading,
            confidence=confidence,
            processing_time_ms=result.processing_time_ms,
            consumption=check.consumption,
            warnings=list(check.warnings),
        )

    async def _read_with_timeout(self, image_bytes: bytes) -> OCRResult:
        """
        Read a photo under the whole-submission deadline.

        Cancelling the read stops the ladder but not a provider call already
        running in its worker thread; that call is bounded by the detector's
        own request timeout. Calls started before the deadline are still
        counted in the returned result.
        """
        timeout = self.settings.submission_timeout_seconds
        started = time.perf_counter()
        progress = ReadProgress()
        try:
            return await asyncio.wait_for(self.reader.read(image_bytes, progress), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("OCR timed out after %.0fs", timeout)
            return OCRResult(
                success=False,
                error=f"Reading the photo timed out after {timeout:g}s",
                error_kind=OCRErrorKind.TIMEOUT,
                suggestions=retry_suggestions(settings=self.settings),
                ocr_calls=progress.ocr_calls,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )

    async def _handle_provider_error(self, state: VerificationState, result: OCRResult) -> PhotoResult:
        quota = result.error_kind is OCRErrorKind.QUOTA
        log.error(
            "OCR provider %s failure for %s (session %s)",
            "quota" if quota else "authentication",
            state.user_id,
            state.session_id,
        )
        state.phase = VerificationPhase.MANUAL_ENTRY_REQUIRED
        state.manual_only = True
        self.store.put(state)
        await self.sessions.mark_manual_entry(state.session_id)
        await self.notifier.send_text(state.user_id, messages.provider_unavailable(quota))
        return PhotoResult(
            outcome=PhotoOutcome.PROVIDER_ERROR,
            message=result.error or "OCR provider error",
            processing_time_ms=result.processing_time_ms,
        )

    async def _handle_read_failure(self, state: VerificationState, result: OCRResult) -> PhotoResult:
        if state.attempt_count >= self.settings.max_attempts:
            return await self._fallback_to_manual_entry(state, result.processing_time_ms)

        error = result.error or "Could not read the display"
        await self.notifier.send_text(
            state.user_id,
            messages.read_failure(
                error, result.suggestions, state.attempt_count, self.settings.max_attempts
            ),
        )
        return PhotoResult(
            outcome=PhotoOutcome.RETRY,
            message=error,
            confidence=result.confidence,
            should_retry=True,
            processing_time_ms=result.processing_time_ms,
            suggestions=list(result.suggestions),
        )

    async def _handle_low_confidence(
        self, state: VerificationState, confidence: float, result: OCRResult
    ) -> PhotoResult:
        if state.attempt_count >= self.settings.max_attempts:
            return await self._fallback_to_manual_entry(state, result.processing_time_ms)

        await self.notifier.send_text(
            state.user_id,
            messages.low_confidence(confidence, state.attempt_count, self.settings.max_attempts),
        )
        return PhotoResult(
            outcome=PhotoOutcome.RETRY,
            message=f"Low confidence: {confidence:.0f}%",
            reading=result.reading,
            confidence=confidence,
            should_retry=True,
            processing_time_ms=result.processing_time_ms,
            suggestions=list(result.suggestions),
        )

    async def _handle_invalid_reading(
        self, state: VerificationState, error: str, result: OCRResult
    ) -> PhotoResult:
        log.warning("Reading %s rejected for %s: %s", result.reading, state.user_id, error)
        if state.attempt_count >= self.settings.max_attempts:
            return await self._fallback_to_manual_entry(state, result.processing_time_ms)

        await self.notifier.send_text(state.user_id, messages.invalid_reading(error))
        return PhotoResult(
            outcome=PhotoOutcome.INVALID_READING,
            message=error,
            reading=result.reading,
            confidence=result.confidence,
            should_retry=True,
            processing_time_ms=result.processing_time_ms,
            suggestions=list(result.suggestions),
        )

    async def _fallback_to_manual_entry(
        self, state: VerificationState, processing_time_ms: Optional[int] = None
    ) -> PhotoResult:
        first_time = not state.manual_only
        state.phase = VerificationPhase.MANUAL_ENTRY_REQUIRED
        state.manual_only = True
        self.store.put(state)

        if first_time:
            await self.sessions.mark_manual_entry(state.session_id)
            log.info(
                "Fallback to manual entry for %s (%s, session %s, %d attempts)",
                state.user_id,
                state.kind.value,
                state.session_id,
                state.attempt_count,
            )
        await self.notifier.send_text(
            state.user_id,
            messages.manual_entry_prompt(state.kind.value, self.settings.max_attempts),
        )
        return PhotoResult(
            outcome=PhotoOutcome.MANUAL_ENTRY_REQUIRED,
            message="Max attempts reached. Manual entry required.",
            processing_time_ms=processing_time_ms,
        )

    # -- manual entry -----------------------------------------------------

    async def submit_manual_reading(self, user_id: str, text: str) -> ManualEntryResult:
        """
        Accept a typed reading, validated like a photo reading.

        Allowed while awaiting a photo or after falling back to manual
        entry. On failure the state keeps its phase.
        """
        state = self.store.get(user_id)
        if state is None:
            return ManualEntryResult(accepted=False, message="No active verification")
        if state.phase is VerificationPhase.AWAITING_CONFIRMATION:
            return ManualEntryResult(
                accepted=False,
                message="A reading is awaiting confirmation. Confirm it or retake the photo.",
            )

        state.attempt_count += 1
        self.store.put(state)

        reading = parse_manual_reading(text)
        validation = self.validator.validate_reading(reading)
        if not validation.valid:
            await self.notifier.send_text(user_id, messages.invalid_manual_entry(validation.error))
            return ManualEntryResult(accepted=False, message=validation.error, reading=reading)

        check = ConsumptionCheck(is_valid=True)
        if state.kind is VerificationKind.END:
            check = await self._validate_consumption(state.session_id, reading)
            if not check.is_valid:
                await self.notifier.send_text(user_id, messages.invalid_manual_entry(check.error))
                return ManualEntryResult(accepted=False, message=check.error, reading=reading)

        state.last_reading = reading
        state.last_confidence = 0.0
        state.provider = ReadingProvider.MANUAL
        state.consumption = check.consumption
        state.warnings = list(check.warnings)
        state.phase = VerificationPhase.AWAITING_CONFIRMATION
        self.store.put(state)

        await self._send_confirmation(state)
        log.info(
            "Manual entry accepted for %s: %s (%s, session %s)",
            user_id,
            reading,
            state.kind.value,
            state.session_id,
        )
        return ManualEntryResult(
            accepted=True,
            message="Reading entered. Awaiting confirmation.",
            reading=reading,
            consumption=check.consumption,
            warnings=list(check.warnings),
        )

    # -- confirm / retake / cancel ----------------------------------------

    async def confirm(self, user_id: str) -> bool:
        """
        Confirm the pending reading and persist it.

        Start readings are saved as the session's start reading; end
        readings are saved with consumption computed from the stored
        start reading. The state is removed on success.
        """
        state = self.store.get(user_id)
        if state is None:
            await self.notifier.send_text(user_id, messages.VERIFICATION_EXPIRED)
            return False
        if state.phase is not VerificationPhase.AWAITING_CONFIRMATION or state.last_reading is None:
            await self.notifier.send_text(user_id, messages.NO_READING_TO_CONFIRM)
            return False

        if state.kind is VerificationKind.START:
            return await self._confirm_start(state)
        return await self._confirm_end(state)

    async def _confirm_start(self, state: VerificationState) -> bool:
        session = await self.sessions.get_session(state.session_id)
        if session is None:
            log.error(
                "Session %s not found during start confirmation for %s",
                state.session_id,
                state.user_id,
            )
            await self.notifier.send_text(state.user_id, messages.SESSION_NOT_FOUND)
            self.store.pop(state.user_id)
            return False

        await self.sessions.save_start_reading(
            state.session_id, state.last_reading, state.last_confidence or 0.0, state.attempt_count
        )
        await self.sessions.set_verification_status(state.session_id, self.STATUS_START_VERIFIED)
        self.store.pop(state.user_id)
        log.info(
            "Start reading %s confirmed for %s (session %s, confidence %s, %d attempts)",
            state.last_reading,
            state.user_id,
            state.session_id,
            state.last_confidence,
            state.attempt_count,
        )
        return True

    async def _confirm_end(self, state: VerificationState) -> bool:
        session = await self.sessions.get_session(state.session_id)
        if session is None or session.start_reading is None:
            log.error(
                "Start reading not found during end confirmation for %s (session %s)",
                state.user_id,
                state.session_id,
            )
            await self.notifier.send_text(state.user_id, messages.SESSION_NOT_FOUND)
            self.store.pop(state.user_id)
            return False

        result = self.validator.calculate_consumption(session.start_reading, state.last_reading)
        if not result.valid:
            log.error(
                "Consumption invalid at end confirmation (session %s): %s",
                state.session_id,
                result.error,
            )
            await self.notifier.send_text(state.user_id, messages.invalid_reading(result.error))
            return False

        await self.sessions.save_end_reading(
            state.session_id,
            state.last_reading,
            state.last_confidence or 0.0,
            state.attempt_count,
            result.consumption,
        )
        await self.sessions.set_verification_status(state.session_id, self.STATUS_COMPLETED)
        self.store.pop(state.user_id)
        log.info(
            "End reading %s confirmed for %s (session %s, consumption %s kWh)",
            state.last_reading,
            state.user_id,
            state.session_id,
            result.consumption,
        )
        return True

    async def retake(self, user_id: str) -> Optional[VerificationPhase]:
        """
        Discard the pending reading and ask for another photo.

        The attempt count is kept. Flows that have switched to manual
        entry (attempts exhausted or OCR provider unavailable) go back to
        MANUAL_ENTRY_REQUIRED instead; photos are never requested again.
        Outside AWAITING_CONFIRMATION the phase is left as it is and the
        current prompt is re-sent.

        Returns:
            The resulting phase, or None if there is no active verification
        """
        state = self.store.get(user_id)
        if state is None:
            await self.notifier.send_text(user_id, messages.VERIFICATION_EXPIRED)
            return None

        if state.phase is VerificationPhase.AWAITING_CONFIRMATION:
            state.last_reading = None
            state.last_confidence = None
            state.consumption = None
            state.warnings = []

        if state.manual_only or state.attempt_count >= self.settings.max_attempts:
            await self._fallback_to_manual_entry(state)
            return state.phase

        state.phase = VerificationPhase.AWAITING_PHOTO
        self.store.put(state)
        await self.notifier.send_text(
            user_id,
            messages.photo_request(state.kind.value, state.attempt_count, self.settings.max_attempts),
        )
        return state.phase

    async def cancel(self, user_id: str) -> bool:
        """Remove the user's verification state. Returns True if one existed."""
        removed = self.store.pop(user_id) is not None
        if removed:
            log.debug("Verification state for %s cancelled", user_id)
        return removed

    def is_active(self, user_id: str) -> bool:
        return self.store.get(user_id) is not None

    def get_state(self, user_id: str) -> Optional[VerificationState]:
        return self.store.get(user_id)

    # -- validation -------------------------------------------------------

    async def _validate_consumption(self, session_id: str, end_reading: float) -> ConsumptionCheck:
        session = await self.sessions.get_session(session_id)
        if session is None or session.start_reading is None:
            return ConsumptionCheck(is_valid=False, error="Start reading not found")

        result = self.validator.calculate_consumption(session.start_reading, end_reading)
        if not result.valid:
            return ConsumptionCheck(is_valid=False, error=result.error)

        duration_minutes = 0
        if session.started_at is not None:
            elapsed = (self.clock() - session.started_at).total_seconds()
            duration_minutes = math.floor(elapsed / 60)

        context = self.validator.validate_consumption_with_context(
            result.consumption,
            duration_minutes,
            session.charger_power_kw or self.settings.default_charger_power_kw,
            session.battery_capacity_kwh,
        )
        return ConsumptionCheck(
            is_valid=context.valid,
            consumption=result.consumption,
            warnings=list(context.warnings),
            error=context.error,
        )

    async def _send_confirmation(
        self, state: VerificationState, processing_time_ms: Optional[int] = None
    ) -> None:
        text = messages.reading_confirmation(
            state.kind.value,
            state.last_reading,
            state.last_confidence or 0.0,
            consumption=state.consumption,
            warnings=state.warnings,
            processing_time_ms=processing_time_ms,
            settings=self.settings,
        )
        await self.notifier.send_buttons(
            state.user_id, text, messages.confirmation_buttons(state.kind.value)
        )

    # -- expiry -----------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Remove expired states. Safe to call repeatedly."""
        removed = self.store.sweep()
        for user_id in removed:
            log.info("Cleaned up expired verification state for %s", user_id)
        return len(removed)

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup_expired()

    def start_cleanup_task(self, interval: Optional[float] = None) -> asyncio.Task:
        """Schedule periodic cleanup on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            interval = interval or self.settings.cleanup_interval_seconds
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(interval))
        return self._cleanup_task

    async def stop_cleanup_task(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # -- monitoring -------------------------------------------------------

    def get_metrics(self) -> OCRMetrics:
        return dataclasses.replace(self.metrics)

    def reset_daily_counter(self) -> None:
        """Reset the daily OCR call counter (call at midnight)."""
        self.metrics.ocr_calls_today = 0
        log.info("Daily OCR call counter reset")

    def estimate_monthly_cost(self) -> float:
        monthly = self.metrics.ocr_calls_today * 30
        billable = max(0, monthly - self.settings.free_monthly_quota)
        return billable * self.settings.cost_per_request

    def is_approaching_quota(self) -> bool:
        s = self.settings
        return self.metrics.ocr_calls_today > s.free_monthly_quota * s.quota_warning_ratio

    def _check_quota(self) -> None:
        if self.is_approaching_quota():
            log.warning(
                "Approaching OCR quota: %d calls today (quota %d)",
                self.metrics.ocr_calls_today,
                self.settings.free_monthly_quota,
            )

    def log_metrics(self) -> None:
        m = self.metrics
        log.info(
            "OCR metrics: attempts=%d successes=%d success_rate=%.1f%% "
            "avg_confidence=%.1f avg_time=%.0fms calls_today=%d est_monthly_cost=%.2f",
            m.total_attempts,
            m.successful_reads,
            m.success_rate,
            m.average_confidence,
            m.average_processing_time_ms,
            m.ocr_calls_today,
            self.estimate_monthly_cost(),
        )

    def debug_info(self, user_id: str) -> Optional[Dict[str, object]]:
        """Snapshot of a user's state, including expired ones not yet swept."""
        state = self.store.peek(user_id)
        if state is None:
            return None
        now = self.clock()
        return {
            "session_id": state.session_id,
            "kind": state.kind.value,
            "phase": state.phase.value,
            "attempt_count": state.attempt_count,
            "last_reading": state.last_reading,
            "last_confidence": state.last_confidence,
            "provider": state.provider.value,
            "age_seconds": state.age(now).total_seconds(),
            "is_expired": state.is_expired(now, self.settings.state_ttl_seconds),
        }
