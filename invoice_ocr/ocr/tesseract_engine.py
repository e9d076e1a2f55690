"""Tesseract OCR backend with explicit per-language engine handles.

Each handle represents one initialized language. Handles are created with
:meth:`TesseractBackend.init`, used with :meth:`TesseractBackend.recognize`
and released with :meth:`TesseractBackend.release`.
"""

import threading
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import pytesseract
from PIL import Image

from invoice_ocr.utils.exceptions import EngineNotReadyError, UpstreamServiceError
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(eq=False)
class EngineHandle:
    """An initialized recognition engine for one language.

    The lock serializes recognition calls on this handle; handles for
    different languages can be used in parallel.
    """

    language: str
    ready: bool = True
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class OCRBackend(Protocol):
    """Black-box OCR engine consumed by the text recognizer."""

    def init(self, language: str) -> EngineHandle: ...

    def recognize(self, handle: EngineHandle, image: np.ndarray) -> str: ...

    def release(self, handle: EngineHandle) -> None: ...


class TesseractBackend:
    """Tesseract OCR through ``pytesseract``.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        psm: Tesseract page segmentation mode.
        timeout_s: Per-pass timeout in seconds; ``0`` disables it.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        psm: int = 3,
        timeout_s: float = 0,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.psm = psm
        self.timeout_s = timeout_s

    def init(self, language: str) -> EngineHandle:
        """Verify the language pack is installed and return a handle.

        Raises:
            UpstreamServiceError: If Tesseract is missing or the language
                pack is not installed.
        """
        try:
            available = pytesseract.get_languages(config="")
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as exc:
            raise UpstreamServiceError("ocr", f"Tesseract unavailable: {exc}") from exc

        if language not in available:
            raise UpstreamServiceError(
                "ocr", f"Tesseract language pack '{language}' is not installed"
            )

        logger.info("Initialized Tesseract engine for '%s'", language)
        return EngineHandle(language=language)

    def recognize(self, handle: EngineHandle, image: np.ndarray) -> str:
        """Run one OCR pass for the handle's language.

        Raises:
            EngineNotReadyError: If the handle has been released.
            UpstreamServiceError: If Tesseract fails or times out.
        """
        if not handle.ready:
            raise EngineNotReadyError(handle.language, "released")

        try:
            text = pytesseract.image_to_string(
                Image.fromarray(image),
                lang=handle.language,
                config=f"--psm {self.psm}",
                timeout=self.timeout_s,
            )
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as exc:
            raise UpstreamServiceError("ocr", str(exc)) from exc
        except RuntimeError as exc:
            # pytesseract signals a timeout with a bare RuntimeError
            raise UpstreamServiceError("ocr", f"timed out: {exc}") from exc

        logger.debug("OCR pass '%s' produced %d characters", handle.language, len(text))
        return text

    def release(self, handle: EngineHandle) -> None:
        """Mark a handle released, waiting for an in-progress pass to finish."""
        with handle.lock:
            handle.ready = False
        logger.info("Released Tesseract engine for '%s'", handle.language)
