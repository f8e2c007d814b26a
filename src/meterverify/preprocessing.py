"""Image preprocessing strategies for meter display photos.

Three fixed recipes, tried in escalation order by the reader:

- STANDARD: gentle clean-up at high working resolution
- AGGRESSIVE: smaller image, stronger denoise/sharpen/boost, gamma
- ADAPTIVE_THRESHOLD: small image, hard binarisation

Each recipe takes encoded image bytes and returns PNG bytes ready for
the OCR call.
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Tuple

import cv2
import numpy as np

from meterverify.config import DEFAULT_SETTINGS, OCRSettings
from meterverify.errors import ImageDecodeError

log = logging.getLogger(__name__)


class PreprocessStrategy(Enum):
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"
    ADAPTIVE_THRESHOLD = "adaptive_threshold"


ESCALATION_ORDER: Tuple[PreprocessStrategy, ...] = (
    PreprocessStrategy.STANDARD,
    PreprocessStrategy.AGGRESSIVE,
    PreprocessStrategy.ADAPTIVE_THRESHOLD,
)


# ---------------------------------------------------------------------------
# Primitive transforms
# ---------------------------------------------------------------------------


def decode_image(content: bytes) -> np.ndarray:
    """
    Decode image bytes to a BGR array.

    ``IMREAD_COLOR`` applies the EXIF orientation tag, which takes care
    of auto-rotation for phone photos.

    Raises:
        ImageDecodeError: If the bytes are not a decodable image
    """
    if not content:
        raise ImageDecodeError("Empty image")
    arr = np.frombuffer(content, dtype=np.uint8)
    bgr = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if bgr is None:
        raise ImageDecodeError("Could not decode image")
    return bgr


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", image, [cv2.IMWRITE_PNG_COMPRESSION, 0])
    if not ok:
        raise ImageDecodeError("Could not encode preprocessed image")
    return buf.tobytes()


def fit_inside(image: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Downscale to fit within (width, height), never enlarging."""
    h, w = image.shape[:2]
    max_w, max_h = size
    scale = min(max_w / w, max_h / h)
    if scale >= 1.0:
        return image
    new_size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(image, new_size, interpolation=cv2.INTER_LANCZOS4)


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def normalize_range(gray: np.ndarray, lower: float = 1.0, upper: float = 99.0) -> np.ndarray:
    """Stretch contrast so the given percentiles map to 0 and 255."""
    lo, hi = np.percentile(gray, (lower, upper))
    if hi <= lo:
        return gray
    stretched = (gray.astype(np.float32) - lo) * (255.0 / (hi - lo))
    return np.clip(stretched, 0, 255).astype(np.uint8)


def unsharp(gray: np.ndarray, sigma: float, amount: float) -> np.ndarray:
    blurred = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1.0 + amount, blurred, -amount, 0)


def linear(gray: np.ndarray, alpha: float, beta: float) -> np.ndarray:
    return cv2.convertScaleAbs(gray, alpha=alpha, beta=beta)


def gamma_correct(gray: np.ndarray, gamma: float) -> np.ndarray:
    lut = ((np.arange(256) / 255.0) ** (1.0 / gamma) * 255.0).astype(np.uint8)
    return cv2.LUT(gray, lut)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def preprocess_standard(content: bytes, settings: OCRSettings = DEFAULT_SETTINGS) -> bytes:
    """Standard pass: normalise 1-99%, median 3, moderate sharpen, boost 1.5."""
    image = fit_inside(decode_image(content), settings.standard_size)
    gray = to_gray(image)
    gray = normalize_range(gray, 1, 99)
    gray = cv2.medianBlur(gray, 3)
    gray = unsharp(gray, sigma=1.5, amount=1.0)
    gray = linear(gray, 1.5, -50)
    return encode_png(gray)


def preprocess_aggressive(content: bytes, settings: OCRSettings = DEFAULT_SETTINGS) -> bytes:
    """Aggressive pass: normalise 5-95%, median 5, strong sharpen, boost 2.0, gamma 1.2."""
    image = fit_inside(decode_image(content), settings.aggressive_size)
    gray = to_gray(image)
    gray = normalize_range(gray, 5, 95)
    gray = cv2.medianBlur(gray, 5)
    gray = unsharp(gray, sigma=2.0, amount=1.5)
    gray = linear(gray, 2.0, -80)
    gray = gamma_correct(gray, 1.2)
    return encode_png(gray)


def preprocess_adaptive_threshold(
    content: bytes, settings: OCRSettings = DEFAULT_SETTINGS
) -> bytes:
    """Last resort: binarise at a fixed threshold, then sharpen."""
    image = fit_inside(decode_image(content), settings.adaptive_size)
    gray = normalize_range(to_gray(image), 0, 100)
    _, binary = cv2.threshold(gray, settings.binarize_threshold, 255, cv2.THRESH_BINARY)
    binary = unsharp(binary, sigma=1.0, amount=1.0)
    return encode_png(binary)


Preprocessor = Callable[[bytes, OCRSettings], bytes]

STRATEGIES: Dict[PreprocessStrategy, Preprocessor] = {
    PreprocessStrategy.STANDARD: preprocess_standard,
    PreprocessStrategy.AGGRESSIVE: preprocess_aggressive,
    PreprocessStrategy.ADAPTIVE_THRESHOLD: preprocess_adaptive_threshold,
}


def escalation_ladder() -> List[Tuple[PreprocessStrategy, Preprocessor]]:
    """The fixed (strategy, function) sequence used by the reader."""
    return [(s, STRATEGIES[s]) for s in ESCALATION_ORDER]
