"""
Turn raw OCR text into a ranked list of plausible kWh readings.

Stages:
1. Normalisation: collapse whitespace, uppercase, letter-to-digit fixes
2. Anchored patterns: a number next to a unit or keyword (KWH, METER: ...)
3. Fallback scan: every 2-6 digit number, scored by heuristics
4. Selection: highest score, ties broken by larger value
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from meterverify.config import DEFAULT_SETTINGS, OCRSettings

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Correction Table
# ---------------------------------------------------------------------------


class CorrectionTable:
    """
    Fix common OCR letter-to-digit confusions on meter displays.

    The mapping is applied once to the whole text. It is lossy: keywords
    such as ``READING`` come out as ``READ1NG``, so keyword patterns are
    built from normalised keywords (see :meth:`normalize_keyword`).
    """

    LETTER_TO_DIGIT = {
        "O": "0",
        "o": "0",
        "I": "1",
        "L": "1",
        "l": "1",
        "S": "5",
        "s": "5",
        "Z": "2",
        "z": "2",
        "B": "8",
        "b": "8",
    }

    _WHITESPACE = re.compile(r"\s+")

    def __init__(self, corrections: Optional[dict] = None):
        """
        Args:
            corrections: Replacement mapping (defaults to LETTER_TO_DIGIT)
        """
        mapping = self.LETTER_TO_DIGIT if corrections is None else corrections
        self._table = str.maketrans(mapping)

    def normalize(self, text: str) -> str:
        """
        Normalise raw OCR text for number extraction.

        Args:
            text: Raw OCR text

        Returns:
            Single-line uppercase text with confusions replaced
        """
        if not text:
            return ""
        collapsed = self._WHITESPACE.sub(" ", text).strip().upper()
        return collapsed.translate(self._table)

    def normalize_keyword(self, keyword: str) -> str:
        """Apply the same normalisation to a keyword used in a pattern."""
        return self.normalize(keyword)


# ---------------------------------------------------------------------------
# Candidate Extractor
# ---------------------------------------------------------------------------


@dataclass
class ReadingCandidate:
    """A numeric token found in cleaned OCR text."""

    value: float
    score: int  # Heuristic plausibility (anchored matches score 100)
    source_position: int  # Offset of the number in the cleaned text
    context: str  # Surrounding text used for scoring
    anchored: bool = False  # Found by a unit/keyword pattern


NUMBER = r"(?<![\d.])(\d{2,6}(?:\.\d{1,3})?)(?![\d])"


class ReadingExtractor:
    """
    Extract kWh readings from OCR text.

    Anchored patterns are tried first and short-circuit the scan. The
    fallback scan scores every number:

    - base score 50
    - +30 if a meter/energy keyword appears within ``keyword_window`` chars
    - +10 if the number has a decimal point
    - +10 if the value lies in the typical range (100-10000)

    Numbers outside the valid reading range are discarded.
    """

    ANCHOR_KEYWORDS = ("ENERGY", "METER", "READING")
    CONTEXT_KEYWORDS = ("KWH", "ENERGY", "METER", "READING", "CONSUMPTION")

    BASE_SCORE = 50
    KEYWORD_BONUS = 30
    DECIMAL_BONUS = 10
    TYPICAL_BONUS = 10
    ANCHORED_SCORE = 100

    def __init__(
        self,
        settings: OCRSettings = DEFAULT_SETTINGS,
        corrections: Optional[CorrectionTable] = None,
    ):
        """
        Args:
            settings: Range and scoring configuration
            corrections: Normalisation table (default CorrectionTable())
        """
        self.settings = settings
        self.corrections = corrections or CorrectionTable()
        self.anchored_patterns = self._build_anchored_patterns()
        self._number = re.compile(NUMBER)
        keywords = "|".join(
            re.escape(self.corrections.normalize_keyword(k)) for k in self.CONTEXT_KEYWORDS
        )
        self._context_keyword = re.compile(keywords)

    def _build_anchored_patterns(self) -> List[Pattern]:
        kwh = re.escape(self.corrections.normalize_keyword("KWH"))
        patterns = [
            NUMBER + r"\s*" + kwh,
            kwh + r"\s*[:\-=]?\s*" + NUMBER,
        ]
        for keyword in self.ANCHOR_KEYWORDS:
            word = re.escape(self.corrections.normalize_keyword(keyword))
            patterns.append(word + r"[:\s]+" + NUMBER)
        return [re.compile(p) for p in patterns]

    def is_in_range(self, value: float) -> bool:
        return self.settings.valid_min <= value <= self.settings.valid_max

    def extract_candidates(self, raw_text: str) -> List[ReadingCandidate]:
        """
        Extract ranked reading candidates from raw OCR text.

        Args:
            raw_text: Text as returned by the OCR provider

        Returns:
            Candidates, best first. A single anchored match is returned on
            its own. Empty when nothing plausible was found.
        """
        clean = self.corrections.normalize(raw_text)
        log.debug("Cleaned OCR text: %r -> %r", raw_text, clean)
        if not clean:
            return []

        anchored = self._match_anchored(clean)
        if anchored is not None:
            return [anchored]

        return self.rank(self._scan(clean))

    def extract_reading(self, raw_text: str) -> Optional[ReadingCandidate]:
        """Return the selected candidate, or None if extraction failed."""
        candidates = self.extract_candidates(raw_text)
        if not candidates:
            log.warning("No valid reading candidates found")
            return None
        if len(candidates) > 1:
            log.info(
                "Multiple candidates, selected %s from %s",
                candidates[0].value,
                [c.value for c in candidates],
            )
        return candidates[0]

    def _match_anchored(self, clean: str) -> Optional[ReadingCandidate]:
        for pattern in self.anchored_patterns:
            for match in pattern.finditer(clean):
                value = float(match.group(1))
                if self.is_in_range(value):
                    log.info("Found reading %s via pattern %s", value, pattern.pattern)
                    return ReadingCandidate(
                        value=value,
                        score=self.ANCHORED_SCORE,
                        source_position=match.start(1),
                        context=match.group(0),
                        anchored=True,
                    )
        return None

    def _scan(self, clean: str) -> List[ReadingCandidate]:
        window = self.settings.keyword_window
        candidates = []

        for match in self._number.finditer(clean):
            token = match.group(1)
            value = float(token)
            if not self.is_in_range(value):
                continue

            start = max(0, match.start() - window)
            end = min(len(clean), match.end() + window)
            context = clean[start:end]

            score = self.BASE_SCORE
            if self._context_keyword.search(context):
                score += self.KEYWORD_BONUS
            if "." in token:
                score += self.DECIMAL_BONUS
            if self.settings.typical_min <= value <= self.settings.typical_max:
                score += self.TYPICAL_BONUS

            candidates.append(
                ReadingCandidate(
                    value=value,
                    score=score,
                    source_position=match.start(1),
                    context=context,
                )
            )

        return candidates

    @staticmethod
    def rank(candidates: List[ReadingCandidate]) -> List[ReadingCandidate]:
        """
        Order candidates by score, then by value, both descending.

        The sort is stable, so candidates equal in score and value keep
        their text order and the selection is reproducible.
        """
        return sorted(candidates, key=_rank_key)


def _rank_key(candidate: ReadingCandidate) -> Tuple[int, float]:
    return (-candidate.score, -candidate.value)


_default_extractor: Optional[ReadingExtractor] = None


def extract_reading(raw_text: str) -> Optional[ReadingCandidate]:
    """Extract a reading with default settings."""
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = ReadingExtractor()
    return _default_extractor.extract_reading(raw_text)
