"""Text detection adapter and confidence scoring.

Classes:
    OCRToken             - One word-level detection with its bounding polygon
    OCRResponse          - Aggregate text block plus per-token detections
    ConfidenceAggregator - Rule-based 0-100 score from per-token features
    VisionTextDetector   - Google Cloud Vision ``text_detection`` wrapper

Usage:
    from meterverify.ocr import VisionTextDetector, run_ocr

    detector = VisionTextDetector()
    attempt = run_ocr(detector, png_bytes)
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from meterverify.config import DEFAULT_SETTINGS, OCRSettings
from meterverify.errors import (
    OCRAuthenticationError,
    OCRProviderError,
    OCRQuotaError,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


@dataclass
class OCRToken:
    """Single detected word."""

    text: str
    vertices: List[Tuple[int, int]] = field(default_factory=list)


@dataclass
class OCRResponse:
    """Structured text-detection output for one image."""

    full_text: str  # Aggregate block covering the whole image
    tokens: List[OCRToken] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.full_text.strip() and not self.tokens


class OCRErrorKind(Enum):
    """Why an OCR attempt (or a whole read) failed."""

    NO_TEXT = "no_text"
    LOW_CONFIDENCE = "low_confidence"
    PROVIDER = "provider"
    AUTHENTICATION = "authentication"
    QUOTA = "quota"
    IMAGE = "image"
    TIMEOUT = "timeout"
    NO_READING = "no_reading"
    INVALID_READING = "invalid_reading"

    @property
    def is_provider_fatal(self) -> bool:
        """Failures that must not be retried against the same provider."""
        return self in (OCRErrorKind.AUTHENTICATION, OCRErrorKind.QUOTA)


@dataclass
class OCRAttemptResult:
    """Outcome of one OCR call on one preprocessed image."""

    success: bool
    raw_text: str = ""
    confidence: Optional[float] = None  # Only set when text was detected
    error: Optional[str] = None
    error_kind: Optional[OCRErrorKind] = None


class TextDetector(Protocol):
    """Anything that can run text detection on encoded image bytes."""

    def detect_text(self, image_bytes: bytes) -> OCRResponse:
        ...


# ---------------------------------------------------------------------------
# Confidence Aggregator
# ---------------------------------------------------------------------------


class ConfidenceAggregator:
    """
    Score OCR reliability from per-token features.

    The provider returns no usable per-word confidence for plain text
    detection, so each token gets a rule-based score:

    - base 70
    - +15 if the token contains a digit
    - +10 if it mentions kwh/energy/meter
    - +5 if its bounding polygon has exactly four vertices

    The aggregate is the mean over tokens (70 when there are none).
    """

    BASE = 70.0
    DIGIT_BONUS = 15.0
    KEYWORD_BONUS = 10.0
    BOX_BONUS = 5.0

    _DIGIT = re.compile(r"\d")
    _KEYWORD = re.compile(r"kwh|energy|meter", re.IGNORECASE)

    def token_score(self, token: OCRToken) -> float:
        score = self.BASE
        if self._DIGIT.search(token.text):
            score += self.DIGIT_BONUS
        if self._KEYWORD.search(token.text):
            score += self.KEYWORD_BONUS
        if len(token.vertices) == 4:
            score += self.BOX_BONUS
        return score

    def score(self, tokens: Sequence[OCRToken]) -> float:
        """
        Aggregate confidence over word-level tokens.

        Args:
            tokens: Per-token detections, excluding the aggregate block

        Returns:
            Mean token score in [0, 100]
        """
        if not tokens:
            return self.BASE
        total = sum(self.token_score(t) for t in tokens)
        return total / len(tokens)


def run_ocr(
    detector: TextDetector,
    image_bytes: bytes,
    settings: OCRSettings = DEFAULT_SETTINGS,
    aggregator: Optional[ConfidenceAggregator] = None,
) -> OCRAttemptResult:
    """
    Run one OCR call and score it.

    Provider errors are returned as failed attempts. A result scoring
    below half the acceptance threshold is a hard failure even when text
    was returned.

    Args:
        detector: Text detection backend
        image_bytes: Encoded (preprocessed) image
        settings: Threshold configuration
        aggregator: Confidence scorer (default ConfidenceAggregator())

    Returns:
        OCRAttemptResult for this call
    """
    aggregator = aggregator or ConfidenceAggregator()

    try:
        response = detector.detect_text(image_bytes)
    except OCRAuthenticationError as e:
        log.error("OCR provider authentication failed: %s", e)
        return OCRAttemptResult(
            success=False,
            error="OCR authentication failed. Check credentials.",
            error_kind=OCRErrorKind.AUTHENTICATION,
        )
    except OCRQuotaError as e:
        log.error("OCR provider quota exceeded: %s", e)
        return OCRAttemptResult(
            success=False,
            error="OCR quota exceeded. Try again later.",
            error_kind=OCRErrorKind.QUOTA,
        )
    except OCRProviderError as e:
        log.warning("OCR provider error: %s", e)
        return OCRAttemptResult(
            success=False,
            error=f"OCR provider error: {e}",
            error_kind=OCRErrorKind.PROVIDER,
        )

    if response.is_empty:
        log.warning("No text detected")
        return OCRAttemptResult(
            success=False,
            confidence=0.0,
            error="No text detected in image",
            error_kind=OCRErrorKind.NO_TEXT,
        )

    text = response.full_text.strip()
    confidence = aggregator.score(response.tokens)
    log.debug(
        "OCR result: confidence=%.1f words=%d preview=%r",
        confidence,
        len(response.tokens),
        text[:100],
    )

    if confidence < settings.min_ocr_confidence * 0.5:
        return OCRAttemptResult(
            success=False,
            raw_text=text,
            confidence=confidence,
            error="Very low confidence OCR result",
            error_kind=OCRErrorKind.LOW_CONFIDENCE,
        )

    return OCRAttemptResult(success=True, raw_text=text, confidence=confidence)


# ---------------------------------------------------------------------------
# Google Cloud Vision backend
# ---------------------------------------------------------------------------


class VisionTextDetector:
    """Google Cloud Vision ``TEXT_DETECTION`` backend.

    The first text annotation of a response is the aggregate block for
    the whole image; the remaining annotations are word-level tokens.

    Args:
        client: Existing ``vision.ImageAnnotatorClient`` (created lazily
            from application default credentials when omitted).
        language_hints: Language hints passed in the image context.
        timeout: Per-call RPC timeout in seconds.
        client_factory: Builds the client on first use (default
            ``vision.ImageAnnotatorClient``).

    Missing or rejected credentials surface as OCRAuthenticationError,
    whether they fail while building the client or during the call.
    """

    def __init__(
        self,
        client=None,
        language_hints: Sequence[str] = ("en",),
        timeout: Optional[float] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self._client = client
        self.language_hints = list(language_hints)
        self.timeout = timeout
        self.client_factory = client_factory

    @property
    def client(self):
        if self._client is None:
            factory = self.client_factory
            if factory is None:
                from google.cloud import vision

                factory = vision.ImageAnnotatorClient
            self._client = factory()
        return self._client

    def detect_text(self, image_bytes: bytes) -> OCRResponse:
        from google.api_core import exceptions as gexc
        from google.auth import exceptions as auth_exc
        from google.cloud import vision

        image = vision.Image(content=image_bytes)
        context = vision.ImageContext(language_hints=self.language_hints)

        try:
            response = self.client.text_detection(
                image=image, image_context=context, timeout=self.timeout
            )
        except auth_exc.GoogleAuthError as e:
            raise OCRAuthenticationError(str(e)) from e
        except (gexc.PermissionDenied, gexc.Unauthenticated) as e:
            raise OCRAuthenticationError(str(e)) from e
        except gexc.ResourceExhausted as e:
            raise OCRQuotaError(str(e)) from e
        except gexc.GoogleAPICallError as e:
            raise OCRProviderError(str(e)) from e

        if response.error.message:
            raise OCRProviderError(response.error.message)

        return self.parse_annotations(response.text_annotations)

    @staticmethod
    def parse_annotations(annotations) -> OCRResponse:
        """Convert Vision ``text_annotations`` into an OCRResponse."""
        if not annotations:
            return OCRResponse(full_text="")

        tokens = []
        for annotation in annotations[1:]:
            vertices = [(v.x, v.y) for v in annotation.bounding_poly.vertices]
            tokens.append(OCRToken(text=annotation.description or "", vertices=vertices))

        return OCRResponse(full_text=annotations[0].description or "", tokens=tokens)
