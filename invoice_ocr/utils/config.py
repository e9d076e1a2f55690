"""Configuration management for the invoice extraction service.

Loads and validates YAML configuration with defaults for image
normalization, OCR, the language model, and the pipeline itself.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class PreprocessingConfig(BaseModel):
    """Payload limit and unsharp-mask parameters for the normalization step."""

    sharpen_amount: float = Field(default=1.0, ge=0.0)
    sharpen_sigma: float = Field(default=1.0, gt=0.0)
    max_payload_bytes: int | None = Field(default=50 * 1024 * 1024, gt=0)


class OCRConfig(BaseModel):
    """Configuration for the Tesseract recognition engines.

    ``languages`` is ordered by priority: the first entry is the primary
    language and leads the merged text.
    """

    tesseract_cmd: str | None = None
    languages: list[str] = Field(default_factory=lambda: ["eng", "ara"])
    psm: int = 3
    timeout_s: float = 0
    max_workers: int | None = None

    @field_validator("languages")
    @classmethod
    def _check_languages(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one OCR language is required")
        if len(set(value)) != len(value):
            raise ValueError("OCR languages must be unique")
        return value


class LLMConfig(BaseModel):
    """Configuration for the chat-completion model used for parsing."""

    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.0
    max_output_tokens: int = Field(default=4096, gt=0)
    timeout_s: float | None = 120.0
    max_retries: int = Field(default=0, ge=0)


class PipelineConfig(BaseModel):
    """Configuration for the pipeline orchestrator."""

    confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    shutdown_timeout_s: float | None = 30.0


class AppConfig(BaseModel):
    """Top-level application configuration."""

    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    log_level: str = "INFO"
    log_file: str | None = None


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
