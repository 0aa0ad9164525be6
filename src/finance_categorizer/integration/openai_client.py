import os
from time import perf_counter

import httpx
from openai import APIError, APITimeoutError, AsyncOpenAI

from finance_categorizer.domain.llm_response import parse_batch_response
from finance_categorizer.domain.prompts import (
    SYSTEM_INSTRUCTIONS,
    build_categorization_prompt,
    estimate_tokens,
)
from finance_categorizer.errors import LLMResponseError, LLMServiceError, LLMTimeoutError
from finance_categorizer.logger import get_logger
from finance_categorizer.models import Category, LLMBatchResponse, LLMModel, Transaction

logger = get_logger(__name__)


class OpenAIBatchClient:
    """Batch categorization through the OpenAI Responses API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.1,
        max_output_tokens: int = 4000,
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            max_retries=0,
        )
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def estimate_tokens(
        self, transactions: list[Transaction], categories: list[Category]
    ) -> tuple[int, int]:
        return estimate_tokens(transactions, categories)

    async def categorize_batch(
        self, transactions: list[Transaction], categories: list[Category], model: LLMModel
    ) -> LLMBatchResponse:
        prompt = build_categorization_prompt(transactions, categories)
        start = perf_counter()
        try:
            response = await self.client.responses.create(
                model=model.name,
                instructions=SYSTEM_INSTRUCTIONS,
                input=prompt,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            )
        except APITimeoutError as e:
            raise LLMTimeoutError(f"LLM request timed out: {e}") from e
        except APIError as e:
            raise LLMServiceError(f"LLM request failed: {e}") from e
        elapsed_ms = (perf_counter() - start) * 1000

        text = self._extract_output_text(response)
        if text is None:
            raise LLMResponseError("LLM response contained no text")
        results = parse_batch_response(text, transactions, categories)

        input_tokens, output_tokens = self._usage(response)
        if input_tokens is None or output_tokens is None:
            input_tokens, output_tokens = estimate_tokens(transactions, categories)

        response_model = getattr(response, "model", None)
        if not isinstance(response_model, str) or not response_model:
            response_model = model.name

        logger.debug(
            "[LLM] %s answered %s transactions in %.0f ms (%s in / %s out tokens).",
            model.name,
            len(transactions),
            elapsed_ms,
            input_tokens,
            output_tokens,
        )
        return LLMBatchResponse(
            results=results,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=response_model,
            processing_time_ms=elapsed_ms,
        )

    @staticmethod
    def _usage(response: object) -> tuple[int | None, int | None]:
        usage = getattr(response, "usage", None)
        if usage is None:
            return None, None
        input_tokens = getattr(usage, "input_tokens", None)
        output_tokens = getattr(usage, "output_tokens", None)
        if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
            return None, None
        return input_tokens, output_tokens

    @staticmethod
    def _extract_output_text(response: object) -> str | None:
        output_text = getattr(response, "output_text", None)
        if isinstance(output_text, str) and output_text:
            return output_text

        output = getattr(response, "output", None)
        if not output:
            return None

        parts: list[str] = []
        for item in output:
            content = getattr(item, "content", None)
            if not content:
                continue
            for block in content:
                if getattr(block, "type", None) in {"output_text", "text"}:
                    text = getattr(block, "text", None)
                    if text:
                        parts.append(text)
        return "".join(parts) if parts else None
