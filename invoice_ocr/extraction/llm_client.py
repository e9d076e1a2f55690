"""Chat-completion client used by the structured extractor."""

from typing import Protocol

import openai
from openai import OpenAI

from invoice_ocr.utils.config import LLMConfig
from invoice_ocr.utils.exceptions import UpstreamServiceError
from invoice_ocr.utils.logger import get_logger

logger = get_logger(__name__)


class LLMClient(Protocol):
    """Text-in, text-out language model."""

    def complete(
        self, prompt: str, *, temperature: float, max_output_tokens: int
    ) -> str: ...


class OpenAIChatClient:
    """OpenAI Chat Completions wrapper.

    SDK-level retries default to zero so no call is repeated behind the
    caller's back.

    Args:
        config: Model name, credentials, timeout and retry settings.
            ``api_key=None`` lets the SDK read ``OPENAI_API_KEY``.
    """

    def __init__(self, config: LLMConfig, client: OpenAI | None = None) -> None:
        self.model = config.model
        if client is None:
            try:
                client = OpenAI(
                    api_key=config.api_key,
                    base_url=config.base_url,
                    timeout=config.timeout_s,
                    max_retries=config.max_retries,
                )
            except openai.OpenAIError as exc:
                raise UpstreamServiceError("llm", str(exc)) from exc
        self._client = client

    def complete(
        self, prompt: str, *, temperature: float, max_output_tokens: int
    ) -> str:
        """Send a single user prompt and return the reply text.

        Raises:
            UpstreamServiceError: On any API, network or quota failure, or
                when the reply carries no text.
        """
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_output_tokens,
            )
        except openai.OpenAIError as exc:
            raise UpstreamServiceError("llm", str(exc)) from exc

        if not response.choices or response.choices[0].message.content is None:
            raise UpstreamServiceError("llm", "model returned no content")

        choice = response.choices[0]
        if choice.finish_reason == "length":
            logger.warning(
                "Model output hit the %d token ceiling; response may be truncated",
                max_output_tokens,
            )
        return choice.message.content
