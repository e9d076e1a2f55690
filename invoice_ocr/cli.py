"""Command-line interface for single and batch invoice extraction.

``extract`` prints one invoice record as JSON; ``batch`` runs a folder of
invoice images through the pipeline and writes the header fields to CSV.
"""

import argparse
import csv
import json
import sys
import time
from pathlib import Path

from invoice_ocr.pipeline.orchestrator import InvoicePipeline, build_pipeline
from invoice_ocr.utils.config import load_config
from invoice_ocr.utils.exceptions import InvoiceExtractionError
from invoice_ocr.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.tiff", "*.tif", "*.webp", "*.bmp")
_CSV_COLUMNS = [
    "filename",
    "status",
    "processing_time_s",
    "invoiceNumber",
    "invoiceDate",
    "dueDate",
    "vendor",
    "customer",
    "subtotal",
    "taxAmount",
    "total",
    "currency",
    "itemCount",
    "paymentStatus",
    "confidence",
    "extractedAt",
    "errorKind",
    "error",
]


def _find_images(input_dir: Path) -> list[Path]:
    """Find all supported invoice images in a directory.

    Args:
        input_dir: Directory to scan.

    Returns:
        Sorted list of image paths.
    """
    files: list[Path] = []
    for ext in _SUPPORTED_EXTENSIONS:
        files.extend(input_dir.glob(ext))
        files.extend(input_dir.glob(ext.upper()))
    return sorted(set(files))


def _record_row(filename: str, record: dict[str, object]) -> dict[str, object]:
    """Flatten an invoice record into a CSV row."""
    vendor = record.get("vendor") or {}
    customer = record.get("customer") or {}
    return {
        "filename": filename,
        "status": "success",
        "invoiceNumber": record.get("invoiceNumber"),
        "invoiceDate": record.get("invoiceDate"),
        "dueDate": record.get("dueDate"),
        "vendor": vendor.get("name"),
        "customer": customer.get("name"),
        "subtotal": record.get("subtotal"),
        "taxAmount": record.get("taxAmount"),
        "total": record.get("total"),
        "currency": record.get("currency"),
        "itemCount": len(record.get("items") or []),
        "paymentStatus": record.get("paymentStatus"),
        "confidence": record.get("confidence"),
        "extractedAt": record.get("extractedAt"),
    }


def extract_file(pipeline: InvoicePipeline, file_path: Path) -> dict[str, object]:
    """Run one image file through a started pipeline.

    Returns:
        The invoice record as a camelCase JSON-ready dict.
    """
    record = pipeline.extract_invoice(file_path.read_bytes())
    return record.to_json_dict()


def process_folder(
    pipeline: InvoicePipeline,
    input_dir: Path,
    output_csv: Path,
    verbose: bool = False,
) -> dict[str, int]:
    """Extract every image in a folder and write results to CSV.

    Failures are recorded per file with their error kind; the batch
    continues.

    Args:
        pipeline: A started pipeline.
        input_dir: Directory containing invoice images.
        output_csv: Path for the output CSV file.
        verbose: Whether to print per-file progress.

    Returns:
        Summary dict with total, successful, and failed counts.
    """
    files = _find_images(input_dir)
    if not files:
        logger.warning("No invoice images found in %s", input_dir)
        return {"total": 0, "successful": 0, "failed": 0}

    logger.info("Found %d invoice images to process", len(files))

    rows: list[dict[str, object]] = []
    successful = 0
    failed = 0

    for i, file_path in enumerate(files, 1):
        if verbose:
            print(f"Processing [{i}/{len(files)}]: {file_path.name}")

        start_time = time.time()
        try:
            row = _record_row(file_path.name, extract_file(pipeline, file_path))
            successful += 1
        except InvoiceExtractionError as exc:
            logger.error("Failed to process %s: %s", file_path.name, exc)
            row = {
                "filename": file_path.name,
                "status": "failed",
                "errorKind": exc.kind,
                "error": exc.message,
            }
            failed += 1
        row["processing_time_s"] = round(time.time() - start_time, 2)
        rows.append(row)

    _write_csv(rows, output_csv)
    logger.info("Results written to %s", output_csv)

    summary = {"total": len(files), "successful": successful, "failed": failed}
    _print_summary(summary, output_csv)
    return summary


def _write_csv(rows: list[dict[str, object]], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=_CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Extraction Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Output:     {output_csv}")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Invoice OCR extractor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="YAML configuration file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    single_parser = subparsers.add_parser("extract", help="Extract a single invoice image")
    single_parser.add_argument("file", type=Path, help="Invoice image to process")
    single_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    batch_parser = subparsers.add_parser("batch", help="Extract a folder of invoice images")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory with images")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    if args.command not in ("extract", "batch"):
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level, config.log_file)

    if args.command == "extract" and not args.file.exists():
        print(f"Error: {args.file} does not exist", file=sys.stderr)
        sys.exit(1)
    if args.command == "batch" and not args.input_dir.is_dir():
        print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
        sys.exit(1)

    try:
        with build_pipeline(config) as pipeline:
            if args.command == "batch":
                process_folder(pipeline, args.input_dir, args.output, args.verbose)
                return

            record = extract_file(pipeline, args.file)
    except InvoiceExtractionError as exc:
        print(f"Error [{exc.kind}]: {exc}", file=sys.stderr)
        sys.exit(1)

    output_str = json.dumps(record, indent=2, ensure_ascii=False)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(output_str, encoding="utf-8")
        print(f"Output written to {args.output}")
    else:
        print(output_str)


if __name__ == "__main__":
    main()
