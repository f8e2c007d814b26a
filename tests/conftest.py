"""Shared fakes and fixtures for meterverify tests."""

import time
from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest

from meterverify.config import OCRSettings
from meterverify.ocr import ConfidenceAggregator, OCRResponse, OCRToken
from meterverify.preprocessing import ESCALATION_ORDER
from meterverify.verification import ChargingSession


BOX = [(0, 0), (10, 0), (10, 10), (0, 10)]


def make_response(text: str) -> OCRResponse:
    """Response with one boxed token per whitespace-separated word."""
    tokens = [OCRToken(text=word, vertices=list(BOX)) for word in text.split()]
    return OCRResponse(full_text=text, tokens=tokens)


EMPTY = OCRResponse(full_text="")


class FakeDetector:
    """
    Scripted TextDetector.

    Each call returns (or raises) the next scripted item; the last item
    repeats once the script is exhausted.
    """

    def __init__(self, *script):
        self.script = list(script) or [EMPTY]
        self.calls = 0
        self.images = []

    def detect_text(self, image_bytes: bytes) -> OCRResponse:
        self.images.append(image_bytes)
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


class SlowDetector(FakeDetector):
    """FakeDetector that blocks before answering."""

    def __init__(self, delay: float, *script):
        super().__init__(*script)
        self.delay = delay

    def detect_text(self, image_bytes: bytes) -> OCRResponse:
        time.sleep(self.delay)
        return super().detect_text(image_bytes)


class ScriptedAggregator(ConfidenceAggregator):
    """Returns scripted confidence scores in order, repeating the last."""

    def __init__(self, scores):
        self.scores = list(scores)
        self.calls = 0

    def score(self, tokens):
        value = self.scores[min(self.calls, len(self.scores) - 1)]
        self.calls += 1
        return value


def passthrough_ladder():
    """Escalation ladder whose steps return the input unchanged."""
    return [(strategy, lambda content, settings: content) for strategy in ESCALATION_ORDER]


class InMemorySessions:
    """SessionRepository backed by a dict, recording every write."""

    def __init__(self, *sessions):
        self.sessions = {s.session_id: s for s in sessions}
        self.statuses = []
        self.start_saves = []
        self.end_saves = []
        self.manual_marked = []

    async def get_session(self, session_id):
        return self.sessions.get(session_id)

    async def set_verification_status(self, session_id, status):
        self.statuses.append((session_id, status))

    async def save_start_reading(self, session_id, reading, confidence, attempts):
        self.start_saves.append((session_id, reading, confidence, attempts))
        session = self.sessions[session_id]
        session.start_reading = reading

    async def save_end_reading(self, session_id, reading, confidence, attempts, consumption):
        self.end_saves.append((session_id, reading, confidence, attempts, consumption))

    async def mark_manual_entry(self, session_id):
        self.manual_marked.append(session_id)


class RecordingNotifier:
    """Notifier that keeps every message sent."""

    def __init__(self):
        self.texts = []
        self.buttons = []

    async def send_text(self, user_id, text):
        self.texts.append((user_id, text))

    async def send_buttons(self, user_id, text, buttons):
        self.buttons.append((user_id, text, buttons))


class FakeClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return OCRSettings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(clock):
    return InMemorySessions(
        ChargingSession(session_id="s1", charger_power_kw=50.0),
        ChargingSession(
            session_id="s2",
            start_reading=1200.0,
            started_at=clock() - timedelta(minutes=60),
            charger_power_kw=50.0,
        ),
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def display_image():
    """Encoded JPEG of a synthetic dark display with light digits."""
    image = np.full((1500, 2000, 3), 30, dtype=np.uint8)
    cv2.rectangle(image, (300, 500), (1700, 1000), (60, 60, 60), -1)
    cv2.putText(
        image, "1245.8 kWh", (400, 820), cv2.FONT_HERSHEY_SIMPLEX, 6, (230, 230, 230), 12
    )
    ok, buf = cv2.imencode(".jpg", image)
    assert ok
    return buf.tobytes()


@pytest.fixture
def small_image():
    """Encoded PNG smaller than every working size."""
    image = np.zeros((120, 160, 3), dtype=np.uint8)
    cv2.putText(image, "42", (20, 80), cv2.FONT_HERSHEY_SIMPLEX, 2, (255, 255, 255), 3)
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return buf.tobytes()
