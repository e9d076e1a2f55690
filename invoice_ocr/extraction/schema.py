"""Declared invoice schema and strict parsing of model responses.

The pydantic models here are the single source of truth for the prompt's
format instructions and for validating what the model sends back. Models
are strict: numbers sent as strings, unknown payment statuses and missing
required fields are rejected, never coerced.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class PaymentStatus(StrEnum):
    """Closed set of payment states an invoice can report."""

    PAID = "paid"
    UNPAID = "unpaid"
    PARTIAL = "partial"


class _InvoiceModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
        frozen=True,
        extra="ignore",
        allow_inf_nan=False,
    )


class Party(_InvoiceModel):
    """Vendor or customer details."""

    name: str
    address: str | None = None
    tax_id: str | None = None
    email: str | None = None
    phone: str | None = None


class LineItem(_InvoiceModel):
    """One invoice line.

    ``amount`` is taken from the document as-is and is not checked against
    ``quantity * unit_price``.
    """

    description: str
    quantity: float
    unit_price: float
    amount: float


class InvoiceData(_InvoiceModel):
    """Fields the language model is asked to extract."""

    invoice_number: str
    invoice_date: str
    due_date: str | None = None
    vendor: Party
    customer: Party
    subtotal: float
    tax_amount: float | None = None
    tax_rate: float | None = None
    discount: float | None = None
    total: float
    currency: str
    items: tuple[LineItem, ...]
    payment_terms: str | None = None
    notes: str | None = None
    payment_status: PaymentStatus | None = None


class InvoiceRecord(InvoiceData):
    """Extracted invoice stamped with extraction metadata."""

    confidence: float = Field(ge=0.0, le=1.0)
    extracted_at: datetime

    @classmethod
    def from_data(
        cls, data: InvoiceData, confidence: float, extracted_at: datetime
    ) -> "InvoiceRecord":
        """Attach extraction metadata to validated invoice data."""
        return cls(**dict(data), confidence=confidence, extracted_at=extracted_at)

    def to_json_dict(self) -> dict:
        """Serialize with camelCase keys and JSON-native values."""
        return self.model_dump(by_alias=True, mode="json")


def invoice_json_schema() -> dict:
    """JSON Schema of the fields the model must return."""
    return InvoiceData.model_json_schema(by_alias=True)


@dataclass(frozen=True)
class ParsedInvoice:
    """A model response that validated against the schema."""

    invoice: InvoiceData
    raw_text: str


@dataclass(frozen=True)
class SchemaViolation:
    """A model response that did not validate."""

    raw_text: str
    violations: list[str]


ParseResult = ParsedInvoice | SchemaViolation

# closing fence must start a line; JSON strings cannot contain raw newlines
_FENCED_BLOCK = re.compile(
    r"```(?:json)?[ \t]*\r?\n(.*?)\r?\n[ \t]*```", re.DOTALL | re.IGNORECASE
)


def extract_json_payload(raw: str) -> str:
    """Pull the JSON document out of a model response.

    Prefers a fenced ``json`` block; otherwise takes the outermost braces.
    Returns an empty string when neither is present.
    """
    match = _FENCED_BLOCK.search(raw)
    if match:
        return match.group(1).strip()

    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end < start:
        return ""
    return raw[start : end + 1]


def _describe(error: dict) -> str:
    location = ".".join(str(part) for part in error["loc"]) or "<root>"
    return f"{location}: {error['msg']}"


def parse_invoice_response(raw: str) -> ParseResult:
    """Validate a raw model response against :class:`InvoiceData`.

    Args:
        raw: Untouched model output.

    Returns:
        :class:`ParsedInvoice` on success, :class:`SchemaViolation` otherwise.
    """
    payload = extract_json_payload(raw)
    if not payload:
        return SchemaViolation(raw_text=raw, violations=["response contains no JSON object"])

    try:
        invoice = InvoiceData.model_validate_json(payload)
    except ValidationError as exc:
        return SchemaViolation(
            raw_text=raw,
            violations=[_describe(e) for e in exc.errors(include_url=False)],
        )
    return ParsedInvoice(invoice=invoice, raw_text=raw)


def dump_schema(indent: int | None = None) -> str:
    """Serialized JSON Schema used inside the prompt."""
    return json.dumps(invoice_json_schema(), indent=indent, ensure_ascii=False)
