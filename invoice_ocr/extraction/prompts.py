"""Prompt text for structured invoice extraction."""

from .schema import dump_schema

FORMAT_INSTRUCTIONS = """The output should be a markdown code snippet formatted in the \
following schema, including the leading and trailing "```json" and "```".
Use exactly the property names shown. Numbers must be JSON numbers, not strings.
"paymentStatus" must be one of "paid", "unpaid", "partial" or null.
Properties not listed in "required" may be null.

```json
{schema}
```"""

EXTRACTION_PROMPT = """You are an expert at extracting structured data from invoice text.
Analyze the following text extracted from an invoice and extract the information in a \
structured format.
If any field is not present in the text, mark it as null.

{format_instructions}

Extracted Invoice Text:
{text}
"""


def format_instructions() -> str:
    """Machine-readable output instructions derived from the invoice schema."""
    return FORMAT_INSTRUCTIONS.format(schema=dump_schema())


def build_extraction_prompt(text: str) -> str:
    """Combine the format instructions and recognized text into one prompt."""
    return EXTRACTION_PROMPT.format(
        format_instructions=format_instructions(),
        text=text,
    )
