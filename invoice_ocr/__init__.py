"""Invoice OCR extraction service.

Normalizes a photographed or scanned invoice image, recognizes its text
with Tesseract in one or more languages, and has a language model parse
the text into a validated structured invoice record.
"""

__version__ = "1.0.0"
