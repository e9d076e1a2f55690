"""LLM-driven structured extraction of invoice fields from OCR text."""

import time

from invoice_ocr.utils.config import LLMConfig
from invoice_ocr.utils.exceptions import ExtractionParseError
from invoice_ocr.utils.logger import get_logger

from .llm_client import LLMClient
from .prompts import build_extraction_prompt
from .schema import InvoiceData, SchemaViolation, parse_invoice_response

logger = get_logger(__name__)


class StructuredExtractor:
    """Turns recognized invoice text into validated :class:`InvoiceData`.

    The model is called once per invocation with pinned sampling; there is
    no automatic retry.

    Args:
        client: Language model client.
        temperature: Sampling temperature, ``0.0`` for reproducible output.
        max_output_tokens: Ceiling on the response length.
    """

    def __init__(
        self,
        client: LLMClient,
        temperature: float = 0.0,
        max_output_tokens: int = 4096,
    ) -> None:
        self.client = client
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @classmethod
    def from_config(cls, client: LLMClient, config: LLMConfig) -> "StructuredExtractor":
        return cls(
            client,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
        )

    def extract(self, text: str) -> InvoiceData:
        """Extract invoice fields from recognized text.

        An empty ``text`` is still sent to the model; if nothing usable
        comes back the response fails validation like any other.

        Raises:
            ExtractionParseError: If the response does not match the schema.
            UpstreamServiceError: If the model call itself fails.
        """
        if not text:
            logger.warning("Extracting from empty OCR text")

        prompt = build_extraction_prompt(text)
        start = time.perf_counter()
        raw = self.client.complete(
            prompt,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        logger.info(
            "Model responded with %d characters in %.2fs",
            len(raw),
            time.perf_counter() - start,
        )

        result = parse_invoice_response(raw)
        if isinstance(result, SchemaViolation):
            logger.error(
                "Model response failed validation: %s", "; ".join(result.violations)
            )
            logger.debug("Rejected model response: %s", result.raw_text)
            raise ExtractionParseError(result.raw_text, result.violations)

        logger.info(
            "Extracted invoice %s with %d line items",
            result.invoice.invoice_number,
            len(result.invoice.items),
        )
        return result.invoice
