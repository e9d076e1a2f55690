"""Invoice extraction pipeline orchestrator.

Sequences normalization, recognition and structured extraction, stamps
the result with confidence and timestamp metadata, and owns the lifecycle
of the recognition engines.
"""

import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from invoice_ocr.extraction.llm_client import LLMClient, OpenAIChatClient
from invoice_ocr.extraction.schema import InvoiceData, InvoiceRecord
from invoice_ocr.extraction.structured_extractor import StructuredExtractor
from invoice_ocr.ocr.recognizer import TextRecognizer
from invoice_ocr.ocr.tesseract_engine import OCRBackend, TesseractBackend
from invoice_ocr.preprocessing.normalizer import ImageNormalizer
from invoice_ocr.utils.config import AppConfig
from invoice_ocr.utils.exceptions import EngineNotReadyError
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)

ConfidencePolicy = Callable[[str, InvoiceData], float]


class ConstantConfidence:
    """Confidence policy that reports a fixed score.

    Args:
        value: Score in ``[0, 1]``.
    """

    def __init__(self, value: float) -> None:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {value}")
        self.value = value

    def __call__(self, ocr_text: str, invoice: InvoiceData) -> float:
        return self.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoicePipeline:
    """Runs one invoice image through every extraction stage.

    Engines must be started with :meth:`start` before any call is accepted
    and released with :meth:`shutdown`. Shutdown stops accepting new calls
    and waits for in-flight ones to drain before releasing engines.

    Args:
        normalizer: Image normalization stage.
        recognizer: Text recognition stage (owns the engine handles).
        extractor: Structured extraction stage.
        confidence_policy: Callable scoring ``(ocr_text, invoice)``.
            Defaults to a constant ``0.95``.
        clock: Returns the extraction timestamp.
        shutdown_timeout_s: How long :meth:`shutdown` waits for in-flight
            calls; ``None`` waits indefinitely.
    """

    def __init__(
        self,
        normalizer: ImageNormalizer,
        recognizer: TextRecognizer,
        extractor: StructuredExtractor,
        confidence_policy: ConfidencePolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        shutdown_timeout_s: float | None = 30.0,
    ) -> None:
        self.normalizer = normalizer
        self.recognizer = recognizer
        self.extractor = extractor
        self.confidence_policy = confidence_policy or ConstantConfidence(0.95)
        self.clock = clock
        self.shutdown_timeout_s = shutdown_timeout_s
        self._cond = threading.Condition()
        self._accepting = False
        self._in_flight = 0

    @property
    def is_ready(self) -> bool:
        return self._accepting and self.recognizer.is_ready

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def start(self) -> None:
        """Initialize the recognition engines and begin accepting calls.

        Raises:
            UpstreamServiceError: If any engine fails to initialize. The
                pipeline keeps rejecting calls; :meth:`shutdown` is still safe.
        """
        logger.info("Starting recognition engines: %s", ", ".join(self.recognizer.languages))
        self.recognizer.start()
        with self._cond:
            self._accepting = True
        logger.info("Invoice pipeline ready")

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting calls, drain in-flight ones, release engines.

        Args:
            timeout: Drain timeout; defaults to ``shutdown_timeout_s``.
                Calls still running afterwards fail with
                :class:`EngineNotReadyError`.
        """
        if timeout is None:
            timeout = self.shutdown_timeout_s
        with self._cond:
            self._accepting = False
            drained = self._cond.wait_for(lambda: self._in_flight == 0, timeout=timeout)
            if not drained:
                logger.warning(
                    "Releasing engines with %d extraction calls still in flight",
                    self._in_flight,
                )
        self.recognizer.shutdown()
        logger.info("Invoice pipeline shut down")

    def __enter__(self) -> "InvoicePipeline":
        try:
            self.start()
        except BaseException:
            self.shutdown()
            raise
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def extract_invoice(
        self,
        encoded_image: bytes | str,
        languages: Iterable[str] | None = None,
    ) -> InvoiceRecord:
        """Extract a structured invoice from an encoded image.

        Args:
            encoded_image: Raw image bytes, base64 text, or a data URI.
            languages: OCR languages to run; defaults to all configured.

        Returns:
            The validated, stamped invoice record.

        Raises:
            EngineNotReadyError: If the pipeline is not started or is
                shutting down.
            InvoiceExtractionError: The first stage failure, unchanged.
        """
        with self._cond:
            if not self._accepting:
                raise EngineNotReadyError(reason="not started")
            self._in_flight += 1
        try:
            return self._run(encoded_image, languages)
        finally:
            with self._cond:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._cond.notify_all()

    def _run(self, encoded_image: bytes | str, languages: Iterable[str] | None) -> InvoiceRecord:
        start = time.perf_counter()
        image = self.normalizer.normalize(encoded_image)
        text = self.recognizer.recognize(image, languages)
        invoice = self.extractor.extract(text)
        extracted_at = self.clock()

        confidence = self.confidence_policy(text, invoice)
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence policy returned {confidence}, outside [0, 1]")

        record = InvoiceRecord.from_data(invoice, confidence, extracted_at)
        logger.info(
            "Extracted invoice %s in %.2fs (confidence %.2f)",
            record.invoice_number,
            time.perf_counter() - start,
            record.confidence,
        )
        return record


def build_pipeline(
    config: AppConfig,
    llm_client: LLMClient | None = None,
    ocr_backend: OCRBackend | None = None,
    confidence_policy: ConfidencePolicy | None = None,
) -> InvoicePipeline:
    """Wire a pipeline from configuration.

    The returned pipeline is not started.
    """
    backend = ocr_backend or TesseractBackend(
        tesseract_cmd=config.ocr.tesseract_cmd,
        psm=config.ocr.psm,
        timeout_s=config.ocr.timeout_s,
    )
    client = llm_client or OpenAIChatClient(config.llm)
    return InvoicePipeline(
        normalizer=ImageNormalizer(config.preprocessing),
        recognizer=TextRecognizer(
            backend, config.ocr.languages, max_workers=config.ocr.max_workers
        ),
        extractor=StructuredExtractor.from_config(client, config.llm),
        confidence_policy=confidence_policy
        or ConstantConfidence(config.pipeline.confidence),
        shutdown_timeout_s=config.pipeline.shutdown_timeout_s,
    )
