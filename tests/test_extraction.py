"""Tests for schema parsing, prompt building and structured extraction."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import openai
import pytest
from pydantic import ValidationError

from invoice_ocr.extraction.llm_client import OpenAIChatClient
from invoice_ocr.extraction.prompts import build_extraction_prompt, format_instructions
from invoice_ocr.extraction.schema import (
    InvoiceData,
    InvoiceRecord,
    ParsedInvoice,
    PaymentStatus,
    SchemaViolation,
    extract_json_payload,
    invoice_json_schema,
    parse_invoice_response,
)
from invoice_ocr.extraction.structured_extractor import StructuredExtractor
from invoice_ocr.utils.config import LLMConfig
from invoice_ocr.utils.exceptions import ExtractionParseError, UpstreamServiceError


def _violations(payload: dict) -> list[str]:
    result = parse_invoice_response(json.dumps(payload))
    assert isinstance(result, SchemaViolation)
    return result.violations


class TestExtractJsonPayload:
    """Tests for locating the JSON document in a model reply."""

    def test_fenced_block(self) -> None:
        assert extract_json_payload('Here:\n```json\n{"a": 1}\n```\nDone') == '{"a": 1}'

    def test_unlabelled_fence(self) -> None:
        assert extract_json_payload('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_object_with_prose(self) -> None:
        assert extract_json_payload('Sure! {"a": {"b": 2}} Hope that helps') == (
            '{"a": {"b": 2}}'
        )

    def test_no_object(self) -> None:
        assert extract_json_payload("I could not read this invoice.") == ""


class TestParseInvoiceResponse:
    """Tests for strict validation of model responses."""

    def test_valid_fenced_response(self, invoice_response: str) -> None:
        result = parse_invoice_response(invoice_response)

        assert isinstance(result, ParsedInvoice)
        invoice = result.invoice
        assert invoice.invoice_number == "100"
        assert invoice.total == 50.0
        assert invoice.currency == "USD"
        assert invoice.vendor.tax_id == "DE123456789"
        assert invoice.customer.address is None
        assert invoice.payment_status is PaymentStatus.UNPAID
        assert [item.description for item in invoice.items] == ["Widget", "Gadget"]
        assert result.raw_text == invoice_response

    def test_optional_fields_default_to_none(self, invoice_payload: dict) -> None:
        for key in ("dueDate", "taxAmount", "taxRate", "discount", "paymentTerms",
                    "notes", "paymentStatus"):
            invoice_payload.pop(key)

        result = parse_invoice_response(json.dumps(invoice_payload))

        assert isinstance(result, ParsedInvoice)
        assert result.invoice.due_date is None
        assert result.invoice.payment_status is None
        assert result.invoice.discount is None

    def test_extra_keys_ignored(self, invoice_payload: dict) -> None:
        invoice_payload["poNumber"] = "PO-9"
        assert isinstance(parse_invoice_response(json.dumps(invoice_payload)), ParsedInvoice)

    def test_line_item_arithmetic_not_enforced(self, invoice_payload: dict) -> None:
        invoice_payload["items"][0]["amount"] = 999.0

        result = parse_invoice_response(json.dumps(invoice_payload))

        assert isinstance(result, ParsedInvoice)
        assert result.invoice.items[0].amount == 999.0

    def test_missing_total_rejected(self, invoice_payload: dict) -> None:
        del invoice_payload["total"]
        assert any(v.startswith("total") for v in _violations(invoice_payload))

    def test_null_total_rejected(self, invoice_payload: dict) -> None:
        invoice_payload["total"] = None
        assert any(v.startswith("total") for v in _violations(invoice_payload))

    def test_nan_total_rejected(self, invoice_payload: dict) -> None:
        raw = json.dumps(invoice_payload).replace('"total": 50.0', '"total": NaN')
        assert '"total": NaN' in raw

        result = parse_invoice_response(raw)

        assert isinstance(result, SchemaViolation)
        assert any(v.startswith("total") for v in result.violations)

    def test_infinite_amount_rejected(self, invoice_payload: dict) -> None:
        invoice_payload["items"][0]["amount"] = float("inf")
        assert any(v.startswith("items.0.amount") for v in _violations(invoice_payload))

    def test_numeric_string_not_coerced(self, invoice_payload: dict) -> None:
        invoice_payload["total"] = "50.00"
        assert any(v.startswith("total") for v in _violations(invoice_payload))

    def test_invalid_payment_status(self, invoice_payload: dict) -> None:
        invoice_payload["paymentStatus"] = "overdue"
        assert any(v.startswith("paymentStatus") for v in _violations(invoice_payload))

    def test_missing_vendor_name(self, invoice_payload: dict) -> None:
        del invoice_payload["vendor"]["name"]
        assert any(v.startswith("vendor.name") for v in _violations(invoice_payload))

    def test_incomplete_line_item(self, invoice_payload: dict) -> None:
        del invoice_payload["items"][1]["unitPrice"]
        assert any(v.startswith("items.1.unitPrice") for v in _violations(invoice_payload))

    def test_missing_items(self, invoice_payload: dict) -> None:
        del invoice_payload["items"]
        assert any(v.startswith("items") for v in _violations(invoice_payload))

    def test_malformed_json(self) -> None:
        result = parse_invoice_response('```json\n{"invoiceNumber": "1",\n```')
        assert isinstance(result, SchemaViolation)
        assert result.violations

    def test_fence_inside_string_value(self, invoice_payload: dict) -> None:
        invoice_payload["notes"] = "see ``` block"
        reply = f"```json\n{json.dumps(invoice_payload)}\n```"

        result = parse_invoice_response(reply)

        assert isinstance(result, ParsedInvoice)
        assert result.invoice.notes == "see ``` block"

    def test_single_line_fence_falls_back_to_braces(self) -> None:
        assert extract_json_payload('```json {"a": 1} ```') == '{"a": 1}'

    def test_no_json_at_all(self) -> None:
        result = parse_invoice_response("")
        assert isinstance(result, SchemaViolation)
        assert result.violations == ["response contains no JSON object"]


class TestInvoiceRecord:
    """Tests for the stamped, immutable output record."""

    def _record(self, invoice_response: str) -> InvoiceRecord:
        result = parse_invoice_response(invoice_response)
        assert isinstance(result, ParsedInvoice)
        return InvoiceRecord.from_data(
            result.invoice,
            confidence=0.95,
            extracted_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        )

    def test_from_data_copies_fields(self, invoice_response: str) -> None:
        record = self._record(invoice_response)
        assert record.invoice_number == "100"
        assert record.confidence == 0.95
        assert len(record.items) == 2

    def test_json_dict_uses_camel_case(self, invoice_response: str) -> None:
        data = self._record(invoice_response).to_json_dict()

        assert data["invoiceNumber"] == "100"
        assert data["vendor"]["taxId"] == "DE123456789"
        assert data["items"][0]["unitPrice"] == 10.0
        assert data["paymentStatus"] == "unpaid"
        assert data["extractedAt"].startswith("2024-03-01T12:00:00")
        assert data["confidence"] == 0.95

    def test_record_is_immutable(self, invoice_response: str) -> None:
        record = self._record(invoice_response)
        with pytest.raises(ValidationError):
            record.total = 0.0

    def test_confidence_bounds(self, invoice_response: str) -> None:
        result = parse_invoice_response(invoice_response)
        assert isinstance(result, ParsedInvoice)
        with pytest.raises(ValidationError):
            InvoiceRecord.from_data(
                result.invoice, confidence=1.2, extracted_at=datetime.now(timezone.utc)
            )


class TestPrompt:
    """Tests for schema-derived format instructions."""

    def test_schema_lists_required_fields(self) -> None:
        schema = invoice_json_schema()
        assert set(schema["required"]) == {
            "invoiceNumber",
            "invoiceDate",
            "vendor",
            "customer",
            "subtotal",
            "total",
            "currency",
            "items",
        }
        assert schema["$defs"]["PaymentStatus"]["enum"] == ["paid", "unpaid", "partial"]
        assert set(schema["$defs"]["LineItem"]["required"]) == {
            "description",
            "quantity",
            "unitPrice",
            "amount",
        }
        assert schema["$defs"]["Party"]["required"] == ["name"]

    def test_format_instructions_embed_schema(self) -> None:
        instructions = format_instructions()
        assert "```json" in instructions
        assert '"invoiceNumber"' in instructions
        assert '"partial"' in instructions

    def test_prompt_contains_text(self) -> None:
        prompt = build_extraction_prompt("Invoice 100, Total 50.00 USD {not a field}")
        assert "Invoice 100, Total 50.00 USD {not a field}" in prompt
        assert "mark it as null" in prompt
        assert prompt.index("Extracted Invoice Text") > prompt.index('"invoiceNumber"')


class TestStructuredExtractor:
    """Tests for the LLM-backed extractor with a stubbed model."""

    def test_extract_success(self, make_llm_client, invoice_response: str) -> None:
        client = make_llm_client(invoice_response)
        extractor = StructuredExtractor(client, temperature=0.0, max_output_tokens=4096)

        invoice = extractor.extract("Invoice 100, Total 50.00 USD")

        assert isinstance(invoice, InvoiceData)
        assert invoice.total == 50.0
        assert client.options == [{"temperature": 0.0, "max_output_tokens": 4096}]
        assert "Invoice 100, Total 50.00 USD" in client.prompts[0]

    def test_from_config(self, make_llm_client, invoice_response: str) -> None:
        client = make_llm_client(invoice_response)
        extractor = StructuredExtractor.from_config(
            client, LLMConfig(temperature=0.0, max_output_tokens=1024)
        )
        extractor.extract("text")
        assert client.options[0]["max_output_tokens"] == 1024

    def test_invalid_response_raises_with_raw_output(
        self, make_llm_client, invoice_payload: dict
    ) -> None:
        del invoice_payload["total"]
        raw = json.dumps(invoice_payload)
        extractor = StructuredExtractor(make_llm_client(raw))

        with pytest.raises(ExtractionParseError) as exc_info:
            extractor.extract("Invoice 100")

        assert exc_info.value.raw_output == raw
        assert any(v.startswith("total") for v in exc_info.value.violations)

    def test_empty_text_never_yields_default_record(self, make_llm_client) -> None:
        extractor = StructuredExtractor(make_llm_client('{"invoiceNumber": null}'))

        with pytest.raises(ExtractionParseError):
            extractor.extract("")

    def test_model_called_once(self, make_llm_client) -> None:
        client = make_llm_client("not json")
        with pytest.raises(ExtractionParseError):
            StructuredExtractor(client).extract("Invoice")
        assert len(client.prompts) == 1


def _completion(content: str | None, finish_reason: str = "stop") -> MagicMock:
    choice = MagicMock()
    choice.message.content = content
    choice.finish_reason = finish_reason
    response = MagicMock()
    response.choices = [choice]
    return response


class TestOpenAIChatClient:
    """Tests for the OpenAI chat wrapper with a mocked SDK client."""

    def test_complete_sends_options(self) -> None:
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = _completion('{"ok": true}')
        client = OpenAIChatClient(LLMConfig(model="gpt-4"), client=sdk)

        text = client.complete("prompt", temperature=0.0, max_output_tokens=4096)

        assert text == '{"ok": true}'
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4"
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 4096
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_sdk_error_wrapped(self) -> None:
        sdk = MagicMock()
        sdk.chat.completions.create.side_effect = openai.OpenAIError("quota exceeded")
        client = OpenAIChatClient(LLMConfig(), client=sdk)

        with pytest.raises(UpstreamServiceError, match="quota exceeded") as exc_info:
            client.complete("prompt", temperature=0.0, max_output_tokens=10)
        assert exc_info.value.service == "llm"

    def test_empty_content(self) -> None:
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = _completion(None)
        client = OpenAIChatClient(LLMConfig(), client=sdk)

        with pytest.raises(UpstreamServiceError, match="no content"):
            client.complete("prompt", temperature=0.0, max_output_tokens=10)

    def test_truncated_output_still_returned(self) -> None:
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = _completion('{"a":', "length")
        client = OpenAIChatClient(LLMConfig(), client=sdk)

        assert client.complete("p", temperature=0.0, max_output_tokens=5) == '{"a":'

    def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(UpstreamServiceError):
            OpenAIChatClient(LLMConfig(api_key=None))
