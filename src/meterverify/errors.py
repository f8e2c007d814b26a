"""Exception types raised inside meterverify.

Pipeline code converts these into typed results; only collaborator
failures escape the public workflow operations.
"""


class MeterVerifyError(Exception):
    """Base class for meterverify errors."""


class ImageDecodeError(MeterVerifyError):
    """Submitted bytes could not be decoded as an image."""


class OCRProviderError(MeterVerifyError):
    """The external text-detection service failed."""


class OCRAuthenticationError(OCRProviderError):
    """Credentials were rejected by the OCR provider."""


class OCRQuotaError(OCRProviderError):
    """The OCR provider's request quota is exhausted."""


class MissingStartReadingError(MeterVerifyError):
    """End verification requested for a session with no confirmed start reading."""
