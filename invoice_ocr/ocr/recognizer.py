"""Multi-language text recognition with a deterministic merge.

One OCR pass runs per requested language, concurrently, each on its own
engine handle. Results are merged by :func:`merge_texts` in the configured
language-priority order.
"""

from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from invoice_ocr.preprocessing.normalizer import NormalizedImage
from invoice_ocr.utils.exceptions import (
    EngineNotReadyError,
    InputError,
    RecognitionFailure,
    UpstreamServiceError,
)
from invoice_ocr.utils.logger import get_logger

from .tesseract_engine import EngineHandle, OCRBackend

logger = get_logger(__name__)


def merge_texts(texts: Iterable[str]) -> str:
    """Merge per-language OCR results.

    Each result is trimmed and empty results are dropped. The remainder is
    joined with newlines in the order given, so callers pass results in
    priority order (primary language first).

    Args:
        texts: OCR results in priority order.

    Returns:
        The merged text; an empty string when every result is empty.
    """
    return "\n".join(t for t in (text.strip() for text in texts) if t)


@dataclass
class PassOutcome:
    """Result of one language's OCR pass."""

    language: str
    text: str | None = None
    error: Exception | None = None


class TextRecognizer:
    """Owns one engine handle per language and fans recognition out.

    Args:
        backend: OCR backend used to create, run and release handles.
        languages: Supported languages in priority order.
        max_workers: Thread pool size; defaults to one per language.
    """

    def __init__(
        self,
        backend: OCRBackend,
        languages: Sequence[str],
        max_workers: int | None = None,
    ) -> None:
        self.backend = backend
        self.languages = list(languages)
        self.max_workers = max_workers or len(self.languages)
        self._handles: dict[str, EngineHandle] = {}
        self._executor: ThreadPoolExecutor | None = None

    @property
    def is_ready(self) -> bool:
        """Whether every configured language has a live handle."""
        return self._executor is not None and all(
            lang in self._handles and self._handles[lang].ready
            for lang in self.languages
        )

    def engine_status(self) -> dict[str, bool]:
        """Readiness of each configured language."""
        return {
            lang: lang in self._handles and self._handles[lang].ready
            for lang in self.languages
        }

    def start(self) -> None:
        """Initialize every language engine that is not initialized yet.

        All languages are attempted; handles that initialized successfully
        are kept even when another language fails.

        Raises:
            UpstreamServiceError: If any language failed to initialize.
        """
        failures: dict[str, Exception] = {}
        for lang in self.languages:
            if lang in self._handles and self._handles[lang].ready:
                continue
            try:
                self._handles[lang] = self.backend.init(lang)
            except UpstreamServiceError as exc:
                logger.error("Failed to initialize OCR engine '%s': %s", lang, exc)
                failures[lang] = exc

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="ocr"
            )

        if failures:
            raise UpstreamServiceError(
                "ocr",
                "engine initialization failed for "
                + ", ".join(f"{lang} ({exc})" for lang, exc in failures.items()),
            )

    def shutdown(self) -> None:
        """Release every handle and stop the worker pool.

        Safe to call repeatedly and after a partially failed :meth:`start`.
        """
        handles, self._handles = self._handles, {}
        for lang, handle in handles.items():
            try:
                self.backend.release(handle)
            except Exception:
                logger.exception("Failed to release OCR engine '%s'", lang)

        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def recognize(
        self,
        image: NormalizedImage,
        languages: Iterable[str] | None = None,
    ) -> str:
        """Recognize text in every requested language and merge it.

        Args:
            image: Normalized image to read.
            languages: Languages to run; defaults to all configured ones. A
                single language code may be passed as a plain string.

        Returns:
            Merged text, possibly empty.

        Raises:
            InputError: If an empty set of languages is requested.
            EngineNotReadyError: If a requested engine is not initialized.
            RecognitionFailure: If every pass failed.
        """
        if languages is None:
            requested = set(self.languages)
        elif isinstance(languages, str):
            requested = {languages}
        else:
            requested = set(languages)
        if not requested:
            raise InputError("At least one OCR language must be requested")

        ordered = [lang for lang in self.languages if lang in requested]
        unknown = sorted(requested - set(ordered))
        if unknown:
            raise EngineNotReadyError(unknown[0], "not configured")

        executor = self._executor
        if executor is None:
            raise EngineNotReadyError()

        tasks: list[tuple[str, EngineHandle]] = []
        for lang in ordered:
            handle = self._handles.get(lang)
            if handle is None or not handle.ready:
                raise EngineNotReadyError(lang)
            tasks.append((lang, handle))

        try:
            futures: dict[str, Future[str]] = {
                lang: executor.submit(self._run_pass, handle, image)
                for lang, handle in tasks
            }
        except RuntimeError as exc:
            # the pool was shut down between the readiness check and submit
            raise EngineNotReadyError(reason="shut down") from exc
        outcomes = [self._collect(lang, future) for lang, future in futures.items()]

        errors = {o.language: o.error for o in outcomes if o.error is not None}
        if len(errors) == len(outcomes):
            raise RecognitionFailure(errors)

        merged = merge_texts(o.text for o in outcomes if o.text is not None)
        logger.info(
            "Recognized %d characters from %d/%d passes",
            len(merged),
            len(outcomes) - len(errors),
            len(outcomes),
        )
        return merged

    def _run_pass(self, handle: EngineHandle, image: NormalizedImage) -> str:
        with handle.lock:
            return self.backend.recognize(handle, image.pixels)

    def _collect(self, language: str, future: Future[str]) -> PassOutcome:
        try:
            return PassOutcome(language=language, text=future.result())
        except EngineNotReadyError:
            raise
        except Exception as exc:
            logger.warning("OCR pass '%s' failed: %s", language, exc)
            return PassOutcome(language=language, error=exc)
