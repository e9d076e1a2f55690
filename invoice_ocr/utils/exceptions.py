"""Error taxonomy for the invoice extraction pipeline.

Every stage raises a subclass of :class:`InvoiceExtractionError` so callers
can tell failures apart by kind without inspecting messages.

Exception hierarchy::

    InvoiceExtractionError
    ├── InputError
    ├── ImageProcessingError
    ├── EngineNotReadyError
    ├── RecognitionFailure
    ├── ExtractionParseError
    └── UpstreamServiceError
"""

from typing import Any


class InvoiceExtractionError(Exception):
    """Base class for all pipeline failures.

    Args:
        message: Human-readable error message.
        details: Optional structured context for diagnostics.
    """

    kind = "InvoiceExtractionError"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InputError(InvoiceExtractionError):
    """The image payload is missing or not a usable type."""

    kind = "InputError"


class ImageProcessingError(InvoiceExtractionError):
    """The image could not be decoded or normalized."""

    kind = "ImageProcessingError"


class EngineNotReadyError(InvoiceExtractionError):
    """A recognition engine was never initialized or has been released."""

    kind = "EngineNotReadyError"

    def __init__(self, language: str | None = None, reason: str = "not initialized") -> None:
        if language:
            message = f"Recognition engine for '{language}' is {reason}"
        else:
            message = f"Recognition engines are {reason}"
        super().__init__(message, {"language": language} if language else None)
        self.language = language


class RecognitionFailure(InvoiceExtractionError):
    """Every requested OCR pass failed.

    Args:
        errors: Mapping of language code to the exception raised by its pass.
    """

    kind = "RecognitionFailure"

    def __init__(self, errors: dict[str, BaseException]) -> None:
        self.errors = errors
        super().__init__(
            f"All {len(errors)} recognition passes failed",
            {lang: str(exc) for lang, exc in errors.items()},
        )


class ExtractionParseError(InvoiceExtractionError):
    """The model response did not validate against the invoice schema.

    Args:
        raw_output: The untouched model response text.
        violations: Human-readable schema violations.
    """

    kind = "ExtractionParseError"

    def __init__(self, raw_output: str, violations: list[str]) -> None:
        self.raw_output = raw_output
        self.violations = violations
        super().__init__(
            "Model response failed schema validation",
            {"violations": violations},
        )


class UpstreamServiceError(InvoiceExtractionError):
    """The OCR or LLM dependency itself failed.

    Args:
        service: Name of the failing dependency (``"ocr"`` or ``"llm"``).
        message: Description of the failure.
    """

    kind = "UpstreamServiceError"

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service} service failed: {message}", {"service": service})
