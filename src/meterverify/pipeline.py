"""
kWh reading pipeline: preprocessing escalation, OCR, extraction, validation.

The escalation ladder is a fixed list of strategies walked by a single
loop, stopping at the first OCR result whose confidence reaches the
acceptance threshold. At most one OCR call is made per strategy, so a
submission costs at most ``len(strategies)`` calls (3 by default).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from meterverify.config import DEFAULT_SETTINGS, RETRY_TIPS, OCRSettings
from meterverify.errors import ImageDecodeError
from meterverify.extraction import ReadingCandidate, ReadingExtractor
from meterverify.ocr import (
    ConfidenceAggregator,
    OCRAttemptResult,
    OCRErrorKind,
    TextDetector,
    run_ocr,
)
from meterverify.preprocessing import PreprocessStrategy, Preprocessor, escalation_ladder
from meterverify.validation import ReadingValidator

log = logging.getLogger(__name__)


@dataclass
class OCRResult:
    """Outcome of reading one submitted image."""

    success: bool
    reading: Optional[float] = None
    confidence: Optional[float] = None
    raw_text: str = ""
    error: Optional[str] = None
    error_kind: Optional[OCRErrorKind] = None
    suggestions: List[str] = field(default_factory=list)
    strategy: Optional[PreprocessStrategy] = None  # Strategy of the evaluated attempt
    ocr_calls: int = 0
    processing_time_ms: int = 0
    candidates: List[ReadingCandidate] = field(default_factory=list)


@dataclass
class ReadProgress:
    """Live counters for a read in flight, readable after a cancellation."""

    ocr_calls: int = 0


def retry_suggestions(
    confidence: Optional[float] = None,
    raw_text: Optional[str] = None,
    settings: OCRSettings = DEFAULT_SETTINGS,
) -> List[str]:
    """
    Pick photo tips for a failed read.

    Args:
        confidence: Confidence of the last attempt (None if unknown)
        raw_text: Text of the last attempt

    Returns:
        De-duplicated tips in display order
    """
    tips = []
    if confidence is None or confidence < settings.low_confidence_hint:
        tips += [RETRY_TIPS["lighting"], RETRY_TIPS["focus"], RETRY_TIPS["steady"]]
    digits = sum(c.isdigit() for c in raw_text or "")
    if digits < 3:
        tips += [RETRY_TIPS["visible"], RETRY_TIPS["numbers"]]
    return list(dict.fromkeys(tips))


class KwhReader:
    """
    Read a kWh value from a meter photo with bounded OCR escalation.

    Strategy:
    1. Preprocess with the next strategy and run one OCR call
    2. Stop if confidence >= min_ocr_confidence, otherwise escalate
    3. After the last strategy, evaluate whatever result was produced
    4. Extract a candidate and validate it
    5. Report a reading still below the threshold as LOW_CONFIDENCE

    Authentication and quota failures end the ladder at once.
    """

    def __init__(
        self,
        detector: TextDetector,
        settings: OCRSettings = DEFAULT_SETTINGS,
        strategies: Optional[Sequence[Tuple[PreprocessStrategy, Preprocessor]]] = None,
        extractor: Optional[ReadingExtractor] = None,
        validator: Optional[ReadingValidator] = None,
        aggregator: Optional[ConfidenceAggregator] = None,
    ):
        """
        Args:
            detector: Text detection backend (injected; fakes in tests)
            settings: Threshold configuration
            strategies: Ordered (strategy, preprocess function) pairs
            extractor: Candidate extractor
            validator: Reading validator
            aggregator: Confidence aggregator
        """
        self.detector = detector
        self.settings = settings
        self.strategies = list(strategies) if strategies is not None else escalation_ladder()
        self.extractor = extractor or ReadingExtractor(settings)
        self.validator = validator or ReadingValidator(settings)
        self.aggregator = aggregator or ConfidenceAggregator()

        self.stats: Dict[str, int] = self._empty_stats()

    def _empty_stats(self) -> Dict[str, int]:
        stats = {"total": 0, "ocr_calls": 0, "succeeded": 0}
        for strategy, _ in self.strategies:
            stats[strategy.value] = 0
        return stats

    async def read(self, image_bytes: bytes, progress: Optional[ReadProgress] = None) -> OCRResult:
        """
        Run the full pipeline on one image.

        Args:
            image_bytes: Encoded photo as uploaded
            progress: Counters updated as OCR calls start, so a caller that
                cancels the read still knows how many calls were billed

        Returns:
            OCRResult; failures carry an error kind and retry suggestions
        """
        started = time.perf_counter()
        self.stats["total"] += 1
        log.info("Starting kWh OCR (%d bytes)", len(image_bytes))

        progress = progress if progress is not None else ReadProgress()
        attempt, strategy, calls = await self._escalate(image_bytes, progress)

        def elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        if not attempt.success:
            return OCRResult(
                success=False,
                confidence=attempt.confidence,
                raw_text=attempt.raw_text,
                error=attempt.error or "OCR failed",
                error_kind=attempt.error_kind,
                suggestions=retry_suggestions(attempt.confidence, attempt.raw_text, self.settings),
                strategy=strategy,
                ocr_calls=calls,
                processing_time_ms=elapsed(),
            )

        candidates = self.extractor.extract_candidates(attempt.raw_text)
        if not candidates:
            log.warning("No valid reading found in %r", attempt.raw_text)
            return OCRResult(
                success=False,
                confidence=attempt.confidence,
                raw_text=attempt.raw_text,
                error="No valid kWh reading found in image",
                error_kind=OCRErrorKind.NO_READING,
                suggestions=retry_suggestions(attempt.confidence, attempt.raw_text, self.settings),
                strategy=strategy,
                ocr_calls=calls,
                processing_time_ms=elapsed(),
            )

        reading = candidates[0].value
        validation = self.validator.validate_reading(reading)
        if not validation.valid:
            log.warning("Reading %s failed validation: %s", reading, validation.error)
            return OCRResult(
                success=False,
                reading=reading,
                confidence=attempt.confidence,
                raw_text=attempt.raw_text,
                error=validation.error,
                error_kind=OCRErrorKind.INVALID_READING,
                suggestions=[
                    "The reading looks unusual. Please verify the meter display is visible."
                ],
                strategy=strategy,
                ocr_calls=calls,
                processing_time_ms=elapsed(),
                candidates=candidates,
            )

        if attempt.confidence < self.settings.min_ocr_confidence:
            log.warning(
                "Reading %s below confidence threshold after %d call(s): %.1f",
                reading,
                calls,
                attempt.confidence,
            )
            return OCRResult(
                success=False,
                reading=reading,
                confidence=attempt.confidence,
                raw_text=attempt.raw_text,
                error=f"Low confidence: {attempt.confidence:.0f}%",
                error_kind=OCRErrorKind.LOW_CONFIDENCE,
                suggestions=retry_suggestions(attempt.confidence, attempt.raw_text, self.settings),
                strategy=strategy,
                ocr_calls=calls,
                processing_time_ms=elapsed(),
                candidates=candidates,
            )

        self.stats["succeeded"] += 1
        result = OCRResult(
            success=True,
            reading=reading,
            confidence=attempt.confidence,
            raw_text=attempt.raw_text,
            strategy=strategy,
            ocr_calls=calls,
            processing_time_ms=elapsed(),
            candidates=candidates,
        )
        log.info(
            "OCR successful: reading=%s confidence=%.1f strategy=%s time=%dms",
            reading,
            attempt.confidence,
            strategy.value,
            result.processing_time_ms,
        )
        return result

    async def _escalate(
        self, image_bytes: bytes, progress: ReadProgress
    ) -> Tuple[OCRAttemptResult, Optional[PreprocessStrategy], int]:
        threshold = self.settings.min_ocr_confidence
        attempt = OCRAttemptResult(success=False, error="No preprocessing strategies configured")
        used: Optional[PreprocessStrategy] = None
        calls = 0

        for strategy, preprocess in self.strategies:
            log.debug("Preprocessing with %s strategy", strategy.value)
            try:
                processed = await asyncio.to_thread(preprocess, image_bytes, self.settings)
            except ImageDecodeError as e:
                log.warning("Preprocessing failed: %s", e)
                attempt = OCRAttemptResult(
                    success=False, error=str(e), error_kind=OCRErrorKind.IMAGE
                )
                used = strategy
                break

            calls += 1
            progress.ocr_calls += 1
            self.stats["ocr_calls"] += 1
            self.stats[strategy.value] += 1
            attempt = await asyncio.to_thread(
                run_ocr, self.detector, processed, self.settings, self.aggregator
            )
            used = strategy

            if attempt.error_kind is not None and attempt.error_kind.is_provider_fatal:
                break
            if attempt.success and attempt.confidence >= threshold:
                break
            log.info(
                "Confidence %s below %s with %s strategy, escalating",
                attempt.confidence,
                threshold,
                strategy.value,
            )

        return attempt, used, calls

    def get_stats(self) -> Dict[str, float]:
        """Get reader statistics."""
        total = max(self.stats["total"], 1)
        stats: Dict[str, float] = dict(self.stats)
        stats["success_pct"] = 100 * self.stats["succeeded"] / total
        stats["calls_per_read"] = self.stats["ocr_calls"] / total
        return stats

    def reset_stats(self) -> None:
        """Reset statistics."""
        self.stats = self._empty_stats()


async def extract_kwh_reading(
    image_bytes: bytes,
    detector: TextDetector,
    settings: OCRSettings = DEFAULT_SETTINGS,
) -> OCRResult:
    """Read one image with a throwaway KwhReader."""
    return await KwhReader(detector, settings).read(image_bytes)
