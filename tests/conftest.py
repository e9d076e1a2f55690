"""Shared test fixtures for the invoice OCR test suite."""

import base64
import io
import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from invoice_ocr.ocr.tesseract_engine import EngineHandle
from invoice_ocr.utils.exceptions import EngineNotReadyError


class FakeOCRBackend:
    """In-memory OCR backend returning canned text per language."""

    def __init__(
        self,
        texts: dict[str, str] | None = None,
        failures: dict[str, Exception] | None = None,
        init_failures: dict[str, Exception] | None = None,
    ) -> None:
        self.texts = texts or {}
        self.failures = failures or {}
        self.init_failures = init_failures or {}
        self.initialized: list[str] = []
        self.released: list[str] = []
        self.calls: list[str] = []

    def init(self, language: str) -> EngineHandle:
        if language in self.init_failures:
            raise self.init_failures[language]
        self.initialized.append(language)
        return EngineHandle(language=language)

    def recognize(self, handle: EngineHandle, image: np.ndarray) -> str:
        if not handle.ready:
            raise EngineNotReadyError(handle.language, "released")
        self.calls.append(handle.language)
        if handle.language in self.failures:
            raise self.failures[handle.language]
        return self.texts.get(handle.language, "")

    def release(self, handle: EngineHandle) -> None:
        handle.ready = False
        self.released.append(handle.language)


class FakeLLMClient:
    """Language model stub that always returns the same response."""

    def __init__(self, response: str) -> None:
        self.response = response
        self.prompts: list[str] = []
        self.options: list[dict[str, float]] = []

    def complete(self, prompt: str, *, temperature: float, max_output_tokens: int) -> str:
        self.prompts.append(prompt)
        self.options.append(
            {"temperature": temperature, "max_output_tokens": max_output_tokens}
        )
        return self.response


@pytest.fixture
def make_ocr_backend() -> type[FakeOCRBackend]:
    """Factory for fake OCR backends."""
    return FakeOCRBackend


@pytest.fixture
def make_llm_client() -> type[FakeLLMClient]:
    """Factory for fake language model clients."""
    return FakeLLMClient


@pytest.fixture
def invoice_payload() -> dict:
    """A complete, schema-valid model response body."""
    return {
        "invoiceNumber": "100",
        "invoiceDate": "2024-01-15",
        "dueDate": "2024-02-15",
        "vendor": {
            "name": "Acme Supplies",
            "address": "1 Industrial Way",
            "taxId": "DE123456789",
            "email": "billing@acme.test",
            "phone": None,
        },
        "customer": {"name": "Globex Corp"},
        "subtotal": 45.0,
        "taxAmount": 5.0,
        "taxRate": 0.11,
        "discount": None,
        "total": 50.00,
        "currency": "USD",
        "items": [
            {"description": "Widget", "quantity": 3, "unitPrice": 10.0, "amount": 30.0},
            {"description": "Gadget", "quantity": 1, "unitPrice": 15.0, "amount": 15.0},
        ],
        "paymentTerms": "Net 30",
        "notes": None,
        "paymentStatus": "unpaid",
    }


@pytest.fixture
def invoice_response(invoice_payload: dict) -> str:
    """The valid payload wrapped the way chat models usually answer."""
    return f"```json\n{json.dumps(invoice_payload)}\n```"


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic RGB test image with low contrast."""
    image = np.full((120, 200, 3), 90, dtype=np.uint8)
    image[40:80, 30:170] = (150, 150, 150)
    return image


@pytest.fixture
def png_bytes(sample_image: np.ndarray) -> bytes:
    """The sample image encoded as PNG."""
    buf = io.BytesIO()
    Image.fromarray(sample_image).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_data_uri(png_bytes: bytes) -> str:
    """The sample PNG as a base64 data URI."""
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent
