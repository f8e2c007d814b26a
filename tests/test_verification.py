"""Tests for the per-user verification workflow."""

import asyncio
import threading
from datetime import timedelta

import pytest
from google.auth.exceptions import DefaultCredentialsError

from conftest import EMPTY, FakeDetector, ScriptedAggregator, SlowDetector, make_response, passthrough_ladder
from meterverify import messages
from meterverify.config import OCRSettings
from meterverify.errors import MissingStartReadingError, OCRAuthenticationError, OCRQuotaError
from meterverify.ocr import VisionTextDetector
from meterverify.pipeline import KwhReader
from meterverify.verification import (
    ChargingSession,
    PhotoOutcome,
    PhotoVerificationService,
    ReadingProvider,
    VerificationKind,
    VerificationPhase,
    VerificationState,
    VerificationStore,
    parse_manual_reading,
)

START = VerificationKind.START
END = VerificationKind.END
PHOTO = b"photo"


@pytest.fixture
def build(sessions, notifier, clock):
    """Factory for a service around a scripted detector."""

    def _build(detector, scores=None, **overrides):
        settings = OCRSettings(**overrides)
        aggregator = ScriptedAggregator(scores) if scores else None
        reader = KwhReader(
            detector, settings, strategies=passthrough_ladder(), aggregator=aggregator
        )
        return PhotoVerificationService(reader, sessions, notifier, settings, clock)

    return _build


@pytest.fixture
def reading_detector():
    return FakeDetector(make_response("1245.8 kWh"))


# ---------------------------------------------------------------------------
# Start flow
# ---------------------------------------------------------------------------


class TestStartVerification:
    """Tests for starting and completing a start reading."""

    def test_start_requests_photo(self, build, reading_detector, sessions, notifier):
        """Test starting records status and prompts for a photo."""
        service = build(reading_detector)
        asyncio.run(service.start_verification("u1", "s1", START))

        assert service.is_active("u1")
        assert sessions.statuses == [("s1", "awaiting_start_photo")]
        assert "current kWh reading" in notifier.texts[-1][1]
        state = service.get_state("u1")
        assert state.phase is VerificationPhase.AWAITING_PHOTO
        assert state.attempt_count == 0

    def test_photo_then_confirm(self, build, reading_detector, sessions, notifier):
        """Test the happy path saves the start reading and clears state."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            result = await service.submit_photo("u1", PHOTO)
            confirmed = await service.confirm("u1")
            return result, confirmed

        result, confirmed = asyncio.run(scenario())

        assert result.success is True
        assert result.outcome is PhotoOutcome.ACCEPTED
        assert result.reading == 1245.8
        assert result.confidence == pytest.approx(87.5)
        assert notifier.buttons[-1][2][0][0] == "confirm_start_reading"
        assert "1245.8 kWh" in notifier.buttons[-1][1]

        assert confirmed is True
        assert sessions.start_saves == [("s1", 1245.8, pytest.approx(87.5), 1)]
        assert sessions.statuses[-1] == ("s1", "start_verified")
        assert not service.is_active("u1")

    def test_restart_replaces_state(self, build, reading_detector):
        """Test a second start discards earlier progress."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            await service.start_verification("u1", "s1", START)

        asyncio.run(scenario())

        state = service.get_state("u1")
        assert state.phase is VerificationPhase.AWAITING_PHOTO
        assert state.attempt_count == 0

    def test_confirm_without_reading(self, build, reading_detector, sessions, notifier):
        """Test confirming before any photo does nothing."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.confirm("u1")

        assert asyncio.run(scenario()) is False
        assert notifier.texts[-1][1] == messages.NO_READING_TO_CONFIRM
        assert sessions.start_saves == []
        assert service.is_active("u1")

    def test_confirm_without_state(self, build, reading_detector, notifier):
        """Test confirming with no verification reports expiry."""
        service = build(reading_detector)

        assert asyncio.run(service.confirm("u1")) is False
        assert notifier.texts[-1][1] == messages.VERIFICATION_EXPIRED

    def test_confirm_missing_session(self, build, reading_detector, sessions, notifier):
        """Test a vanished session drops the state."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "gone", START)
            await service.submit_photo("u1", PHOTO)
            return await service.confirm("u1")

        assert asyncio.run(scenario()) is False
        assert notifier.texts[-1][1] == messages.SESSION_NOT_FOUND
        assert not service.is_active("u1")


# ---------------------------------------------------------------------------
# Photo failures and retries
# ---------------------------------------------------------------------------


class TestPhotoSubmission:
    """Tests for retries, fallbacks and unexpected photos."""

    def test_no_active_verification(self, build, reading_detector):
        """Test photos without a verification are ignored."""
        service = build(reading_detector)
        result = asyncio.run(service.submit_photo("u1", PHOTO))

        assert result.outcome is PhotoOutcome.NO_ACTIVE_VERIFICATION
        assert reading_detector.calls == 0

    def test_low_confidence_retry(self, build, reading_detector, notifier):
        """Test a read below threshold after the full ladder asks for a retry."""
        service = build(reading_detector, scores=[55, 58, 59])

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.RETRY
        assert result.should_retry is True
        assert result.message == "Low confidence: 59%"
        assert reading_detector.calls == 3
        assert "confidence is low" in notifier.texts[-1][1]
        assert service.get_state("u1").phase is VerificationPhase.AWAITING_PHOTO

    def test_manual_entry_after_max_attempts(self, build, sessions, notifier):
        """Test three failed photos switch to manual entry with no further OCR."""
        detector = FakeDetector(EMPTY)
        service = build(detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            outcomes = []
            for _ in range(4):
                outcomes.append((await service.submit_photo("u1", PHOTO)).outcome)
            return outcomes

        outcomes = asyncio.run(scenario())

        assert outcomes == [
            PhotoOutcome.RETRY,
            PhotoOutcome.RETRY,
            PhotoOutcome.MANUAL_ENTRY_REQUIRED,
            PhotoOutcome.MANUAL_ENTRY_REQUIRED,
        ]
        assert detector.calls == 9
        assert sessions.manual_marked == ["s1"]
        state = service.get_state("u1")
        assert state.phase is VerificationPhase.MANUAL_ENTRY_REQUIRED
        assert state.attempt_count == 3
        assert "type the current kWh reading" in notifier.texts[-1][1]

    def test_failure_message_counts_attempts(self, build, notifier):
        """Test failure prompts show the attempt number."""
        service = build(FakeDetector(EMPTY))

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.message == "No text detected in image"
        assert result.suggestions
        assert "Attempt 1 of 3" in notifier.texts[-1][1]

    def test_photo_while_awaiting_confirmation(self, build, reading_detector):
        """Test a second photo is refused until the first is confirmed or retaken."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.NOT_EXPECTED
        assert result.reading == 1245.8
        assert reading_detector.calls == 1
        assert service.get_state("u1").attempt_count == 1

    def test_retake_keeps_attempt_count(self, build, reading_detector, notifier):
        """Test retake returns to awaiting photo without resetting attempts."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            phase = await service.retake("u1")
            prompt = notifier.texts[-1][1]
            second = await service.submit_photo("u1", PHOTO)
            return phase, prompt, second

        phase, prompt, second = asyncio.run(scenario())

        assert phase is VerificationPhase.AWAITING_PHOTO
        assert "attempt 2 of 3" in prompt
        assert second.outcome is PhotoOutcome.ACCEPTED
        assert service.get_state("u1").attempt_count == 2

    def test_retake_after_last_attempt(self, build, reading_detector, sessions):
        """Test retake with no attempts left goes to manual entry."""
        service = build(reading_detector, max_attempts=1)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            return await service.retake("u1")

        assert asyncio.run(scenario()) is VerificationPhase.MANUAL_ENTRY_REQUIRED
        assert sessions.manual_marked == ["s1"]

    def test_retake_without_state(self, build, reading_detector):
        """Test retake with nothing active."""
        service = build(reading_detector)
        assert asyncio.run(service.retake("u1")) is None

    def test_authentication_failure(self, build, sessions, notifier):
        """Test credential errors skip retries and go to manual entry."""
        detector = FakeDetector(OCRAuthenticationError("denied"))
        service = build(detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            first = await service.submit_photo("u1", PHOTO)
            second = await service.submit_photo("u1", PHOTO)
            return first, second

        first, second = asyncio.run(scenario())

        assert first.outcome is PhotoOutcome.PROVIDER_ERROR
        assert first.should_retry is False
        assert second.outcome is PhotoOutcome.MANUAL_ENTRY_REQUIRED
        assert detector.calls == 1
        assert sessions.manual_marked == ["s1"]
        assert service.get_state("u1").phase is VerificationPhase.MANUAL_ENTRY_REQUIRED
        assert any("authentication error" in text for _, text in notifier.texts)

    def test_quota_failure(self, build, notifier):
        """Test quota errors have their own message."""
        service = build(FakeDetector(OCRQuotaError("exhausted")))

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        assert asyncio.run(scenario()).outcome is PhotoOutcome.PROVIDER_ERROR
        assert "temporarily unavailable" in notifier.texts[-1][1]

    def test_retake_after_provider_error_stays_manual(self, build, sessions, notifier):
        """Test retake after an auth failure does not call the provider again."""
        detector = FakeDetector(OCRAuthenticationError("denied"), make_response("1245.8 kWh"))
        service = build(detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            first = await service.submit_photo("u1", PHOTO)
            phase = await service.retake("u1")
            prompt = notifier.texts[-1][1]
            second = await service.submit_photo("u1", PHOTO)
            return first, phase, prompt, second

        first, phase, prompt, second = asyncio.run(scenario())

        assert first.outcome is PhotoOutcome.PROVIDER_ERROR
        assert phase is VerificationPhase.MANUAL_ENTRY_REQUIRED
        assert "type the current kWh reading" in prompt
        assert second.outcome is PhotoOutcome.MANUAL_ENTRY_REQUIRED
        assert detector.calls == 1
        assert sessions.manual_marked == ["s1"]

    def test_retake_of_manual_reading_after_provider_error(self, build):
        """Test rejecting a typed reading asks for another typed reading."""
        detector = FakeDetector(OCRQuotaError("exhausted"), make_response("1245.8 kWh"))
        service = build(detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            entry = await service.submit_manual_reading("u1", "1250")
            phase = await service.retake("u1")
            return entry, phase

        entry, phase = asyncio.run(scenario())

        assert entry.accepted is True
        assert phase is VerificationPhase.MANUAL_ENTRY_REQUIRED
        state = service.get_state("u1")
        assert state.last_reading is None
        assert detector.calls == 1

    def test_missing_credentials_is_provider_error(self, sessions, notifier, clock):
        """Test credentials that cannot be loaded end in manual entry, not a crash."""

        def no_credentials():
            raise DefaultCredentialsError("credentials not found")

        settings = OCRSettings()
        reader = KwhReader(
            VisionTextDetector(client_factory=no_credentials),
            settings,
            strategies=passthrough_ladder(),
        )
        service = PhotoVerificationService(reader, sessions, notifier, settings, clock)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.PROVIDER_ERROR
        assert service.get_state("u1").phase is VerificationPhase.MANUAL_ENTRY_REQUIRED
        assert sessions.manual_marked == ["s1"]

    def test_timeout_counts_as_failed_attempt(self, build):
        """Test a slow provider is abandoned after the submission timeout."""
        detector = SlowDetector(0.3, make_response("1245.8 kWh"))
        service = build(detector, submission_timeout_seconds=0.05)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.RETRY
        assert "timed out" in result.message
        assert service.get_state("u1").attempt_count == 1

    def test_timeout_still_counts_started_calls(self, build):
        """Test OCR calls in flight at the deadline reach the usage metrics."""
        detector = SlowDetector(0.5, make_response("1245.8 kWh"))
        service = build(detector, submission_timeout_seconds=0.15)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_photo("u1", PHOTO)

        asyncio.run(scenario())

        assert service.metrics.ocr_calls_today == 1
        assert service.metrics.total_attempts == 1
        assert service.reader.get_stats()["ocr_calls"] == 1


# ---------------------------------------------------------------------------
# End flow
# ---------------------------------------------------------------------------


class TestEndVerification:
    """Tests for end readings and consumption checks."""

    def test_end_requires_start_reading(self, build, reading_detector):
        """Test end verification needs a confirmed start reading."""
        service = build(reading_detector)

        with pytest.raises(MissingStartReadingError):
            asyncio.run(service.start_verification("u1", "s1", END))
        assert not service.is_active("u1")

    def test_end_photo_then_confirm(self, build, reading_detector, sessions, notifier):
        """Test consumption is computed, shown and saved."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s2", END)
            result = await service.submit_photo("u1", PHOTO)
            return result, await service.confirm("u1")

        result, confirmed = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.ACCEPTED
        assert result.consumption == 45.8
        assert result.warnings == []
        assert "Consumption: 45.80 kWh" in notifier.buttons[-1][1]
        assert notifier.buttons[-1][2][0][0] == "confirm_end_reading"

        assert confirmed is True
        assert sessions.end_saves == [("s2", 1245.8, pytest.approx(87.5), 1, 45.8)]
        assert sessions.statuses == [("s2", "awaiting_end_photo"), ("s2", "completed")]

    def test_confirm_end_after_start_reading_lost(self, build, reading_detector, sessions, notifier):
        """Test the user is told when the start reading is gone at confirmation."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s2", END)
            await service.submit_photo("u1", PHOTO)
            sessions.sessions["s2"].start_reading = None
            return await service.confirm("u1")

        assert asyncio.run(scenario()) is False
        assert notifier.texts[-1][1] == messages.SESSION_NOT_FOUND
        assert sessions.end_saves == []
        assert not service.is_active("u1")

    def test_confirm_end_after_session_removed(self, build, reading_detector, sessions, notifier):
        """Test a session deleted mid-flow is reported at end confirmation."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s2", END)
            await service.submit_photo("u1", PHOTO)
            del sessions.sessions["s2"]
            return await service.confirm("u1")

        assert asyncio.run(scenario()) is False
        assert notifier.texts[-1][1] == messages.SESSION_NOT_FOUND
        assert not service.is_active("u1")

    def test_end_below_start(self, build, sessions):
        """Test an end reading lower than the start is rejected."""
        service = build(FakeDetector(make_response("1100.5 kWh")))

        async def scenario():
            await service.start_verification("u1", "s2", END)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.INVALID_READING
        assert result.message == "End reading must be greater than start reading"
        assert result.should_retry is True

    def test_implausible_for_duration(self, build, reading_detector, sessions, clock):
        """Test 45.8 kWh in ten minutes on 50 kW is rejected."""
        sessions.sessions["s3"] = ChargingSession(
            session_id="s3",
            start_reading=1200.0,
            started_at=clock() - timedelta(minutes=10),
            charger_power_kw=50.0,
        )
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s3", END)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.INVALID_READING
        assert "exceeds theoretical maximum" in result.message

    def test_short_session_skips_context(self, build, reading_detector, sessions, clock):
        """Test a session under a minute old only gets the reading checks."""
        sessions.sessions["s4"] = ChargingSession(
            session_id="s4", start_reading=1200.0, started_at=clock() - timedelta(seconds=30)
        )
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s4", END)
            return await service.submit_photo("u1", PHOTO)

        result = asyncio.run(scenario())

        assert result.outcome is PhotoOutcome.ACCEPTED
        assert result.warnings == ["Duration too short for validation - using reading only"]

    def test_invalid_on_last_attempt_goes_manual(self, build, sessions):
        """Test a validation failure with no attempts left falls back to manual entry."""
        service = build(FakeDetector(make_response("1100.5 kWh")), max_attempts=1)

        async def scenario():
            await service.start_verification("u1", "s2", END)
            return await service.submit_photo("u1", PHOTO)

        assert asyncio.run(scenario()).outcome is PhotoOutcome.MANUAL_ENTRY_REQUIRED
        assert sessions.manual_marked == ["s2"]


# ---------------------------------------------------------------------------
# Manual entry
# ---------------------------------------------------------------------------


class TestManualEntry:
    """Tests for typed readings."""

    @pytest.mark.parametrize(
        "text, value",
        [("1245.8", 1245.8), (" 1245.8 kWh ", 1245.8), ("500KWH", 500.0), ("-5", -5.0)],
    )
    def test_parse(self, text, value):
        """Test accepted typed formats."""
        assert parse_manual_reading(text) == value

    @pytest.mark.parametrize("text", ["", "abc", "12,5", "1245.8 kW", "1.2.3"])
    def test_parse_rejects(self, text):
        """Test malformed input."""
        assert parse_manual_reading(text) is None

    def test_manual_start_reading(self, build, sessions, notifier):
        """Test a typed reading is confirmed like a photo reading."""
        service = build(FakeDetector(EMPTY))

        async def scenario():
            await service.start_verification("u1", "s1", START)
            entry = await service.submit_manual_reading("u1", "1250.5")
            return entry, await service.confirm("u1")

        entry, confirmed = asyncio.run(scenario())

        assert entry
        assert entry.reading == 1250.5
        assert "Manual entry" in notifier.buttons[-1][1]
        assert confirmed is True
        assert sessions.start_saves == [("s1", 1250.5, 0.0, 1)]

    def test_manual_after_fallback(self, build, sessions):
        """Test manual entry after exhausting photo attempts."""
        service = build(FakeDetector(EMPTY), max_attempts=1)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            entry = await service.submit_manual_reading("u1", "1250")
            state = service.get_state("u1")
            return entry, state

        entry, state = asyncio.run(scenario())

        assert entry.accepted is True
        assert state.provider is ReadingProvider.MANUAL
        assert state.phase is VerificationPhase.AWAITING_CONFIRMATION
        assert state.attempt_count == 2

    @pytest.mark.parametrize(
        "text, error",
        [("abc", "Invalid number format"), ("5", "Reading too small (minimum: 10 kWh)")],
    )
    def test_manual_invalid(self, build, notifier, text, error):
        """Test invalid typed readings keep the user in the same phase."""
        service = build(FakeDetector(EMPTY))

        async def scenario():
            await service.start_verification("u1", "s1", START)
            return await service.submit_manual_reading("u1", text)

        entry = asyncio.run(scenario())

        assert not entry
        assert entry.message == error
        assert error in notifier.texts[-1][1]
        assert service.get_state("u1").phase is VerificationPhase.AWAITING_PHOTO

    def test_manual_end_reading(self, build, sessions):
        """Test typed end readings are checked against the start reading."""
        service = build(FakeDetector(EMPTY))

        async def scenario():
            await service.start_verification("u1", "s2", END)
            low = await service.submit_manual_reading("u1", "1100")
            ok = await service.submit_manual_reading("u1", "1230.5")
            return low, ok

        low, ok = asyncio.run(scenario())

        assert low.accepted is False
        assert low.message == "End reading must be greater than start reading"
        assert ok.accepted is True
        assert ok.consumption == 30.5

    def test_manual_while_awaiting_confirmation(self, build, reading_detector):
        """Test typed readings are refused while a reading awaits confirmation."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)
            return await service.submit_manual_reading("u1", "1250")

        assert asyncio.run(scenario()).accepted is False
        assert service.get_state("u1").last_reading == 1245.8

    def test_manual_without_state(self, build, reading_detector):
        """Test typed readings with nothing active."""
        service = build(reading_detector)
        entry = asyncio.run(service.submit_manual_reading("u1", "1250"))

        assert entry.accepted is False
        assert entry.message == "No active verification"


# ---------------------------------------------------------------------------
# Expiry and cleanup
# ---------------------------------------------------------------------------


class TestExpiry:
    """Tests for TTL handling."""

    def test_expired_state_is_inactive(self, build, reading_detector, clock):
        """Test a state older than the TTL is gone."""
        service = build(reading_detector)
        asyncio.run(service.start_verification("u1", "s1", START))

        clock.advance(1800)
        assert service.is_active("u1")

        clock.advance(1)
        assert not service.is_active("u1")
        result = asyncio.run(service.submit_photo("u1", PHOTO))
        assert result.outcome is PhotoOutcome.NO_ACTIVE_VERIFICATION
        assert reading_detector.calls == 0

    def test_cleanup_expired(self, build, reading_detector, clock):
        """Test sweeping removes only expired states and is idempotent."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.start_verification("u2", "s1", START)
            clock.advance(1000)
            await service.start_verification("u3", "s1", START)
            clock.advance(900)

        asyncio.run(scenario())

        assert service.cleanup_expired() == 2
        assert service.cleanup_expired() == 0
        assert service.is_active("u3")
        assert len(service.store) == 1

    def test_cleanup_task(self, build, reading_detector, clock):
        """Test the background task sweeps periodically."""
        service = build(reading_detector)

        async def scenario():
            task = service.start_cleanup_task(interval=0.01)
            assert service.start_cleanup_task() is task
            await service.start_verification("u1", "s1", START)
            clock.advance(2000)
            await asyncio.sleep(0.1)
            remaining = len(service.store)
            await service.stop_cleanup_task()
            return task, remaining

        task, remaining = asyncio.run(scenario())

        assert remaining == 0
        assert task.cancelled()

    def test_cancel(self, build, reading_detector):
        """Test cancel removes state once."""
        service = build(reading_detector)
        asyncio.run(service.start_verification("u1", "s1", START))

        assert asyncio.run(service.cancel("u1")) is True
        assert asyncio.run(service.cancel("u1")) is False
        assert not service.is_active("u1")


class TestVerificationStore:
    """Tests for VerificationStore."""

    def make_state(self, clock, user_id="u1"):
        return VerificationState(user_id=user_id, session_id="s1", kind=START, created_at=clock())

    def test_put_overwrites(self, clock):
        """Test the last write for a user wins."""
        store = VerificationStore(60, clock)
        first = self.make_state(clock)
        second = self.make_state(clock)
        store.put(first)
        store.put(second)

        assert store.get("u1") is second
        assert len(store) == 1

    def test_get_drops_expired(self, clock):
        """Test expired entries vanish on read."""
        store = VerificationStore(60, clock)
        store.put(self.make_state(clock))
        clock.advance(61)

        assert store.peek("u1") is not None
        assert "u1" not in store
        assert store.peek("u1") is None

    def test_pop(self, clock):
        store = VerificationStore(60, clock)
        store.put(self.make_state(clock))

        assert store.pop("u1") is not None
        assert store.pop("u1") is None

    def test_sweep_concurrent_with_put(self, clock):
        """Test sweeping while other threads write keeps every fresh state."""
        store = VerificationStore(60, clock)
        for i in range(200):
            stale = self.make_state(clock, user_id=f"old{i}")
            stale.created_at = clock() - timedelta(seconds=120)
            store.put(stale)

        errors = []
        writers_done = threading.Event()

        def writer(prefix):
            try:
                for i in range(500):
                    store.put(self.make_state(clock, user_id=f"{prefix}{i}"))
            except Exception as e:
                errors.append(e)

        def sweeper():
            try:
                while not writers_done.is_set():
                    store.sweep()
            except Exception as e:
                errors.append(e)

        writers = [threading.Thread(target=writer, args=(f"w{n}-",)) for n in range(4)]
        sweep_thread = threading.Thread(target=sweeper)
        sweep_thread.start()
        for t in writers:
            t.start()
        for t in writers:
            t.join()
        writers_done.set()
        sweep_thread.join()
        store.sweep()

        assert errors == []
        assert len(store) == 4 * 500
        assert all(store.peek(f"w{n}-{i}") is not None for n in range(4) for i in range(500))
        assert not any(store.peek(f"old{i}") for i in range(200))

    def test_sweep_is_idempotent(self, clock):
        """Test a second sweep finds nothing more to remove."""
        store = VerificationStore(60, clock)
        store.put(self.make_state(clock))
        clock.advance(61)

        assert store.sweep() == ["u1"]
        assert store.sweep() == []


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class TestMonitoring:
    """Tests for usage metrics and debug output."""

    def test_metrics_after_success(self, build, reading_detector):
        """Test counters after one accepted photo."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)

        asyncio.run(scenario())
        metrics = service.get_metrics()

        assert metrics.total_attempts == 1
        assert metrics.successful_reads == 1
        assert metrics.ocr_calls_today == 1
        assert metrics.average_confidence == pytest.approx(87.5)
        assert metrics.success_rate == 100

        metrics.total_attempts = 99
        assert service.metrics.total_attempts == 1

    def test_failed_read_counts_all_calls(self, build):
        """Test daily calls count every OCR call made by the ladder."""
        service = build(FakeDetector(EMPTY))

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)

        asyncio.run(scenario())

        assert service.metrics.ocr_calls_today == 3
        assert service.metrics.success_rate == 0

    def test_cost_and_quota(self, build, reading_detector):
        """Test monthly projection and quota warning."""
        service = build(reading_detector)

        service.metrics.ocr_calls_today = 50
        assert service.estimate_monthly_cost() == pytest.approx(0.75)
        assert not service.is_approaching_quota()

        service.metrics.ocr_calls_today = 901
        assert service.is_approaching_quota()

        service.reset_daily_counter()
        assert service.metrics.ocr_calls_today == 0
        assert service.estimate_monthly_cost() == 0

    def test_debug_info(self, build, reading_detector, clock):
        """Test debug output, including expired but unswept states."""
        service = build(reading_detector)

        async def scenario():
            await service.start_verification("u1", "s1", START)
            await service.submit_photo("u1", PHOTO)

        asyncio.run(scenario())
        clock.advance(2000)
        info = service.debug_info("u1")

        assert info["phase"] == "awaiting_confirmation"
        assert info["attempt_count"] == 1
        assert info["last_reading"] == 1245.8
        assert info["provider"] == "vision"
        assert info["is_expired"] is True
        assert service.debug_info("nobody") is None
