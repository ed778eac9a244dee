from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from ..config import AppSettings
from ..domain.models import Customer, FileInput, RecordValidationError
from ..logging import get_logger
from ..pipeline.errors import ExtractionFailure
from .base import ExtractionGateway
from .llm import LLMRequestError, OpenRouterClient, OpenRouterConfig, build_async_openai, scavenge_json_block

LOG = get_logger("extraction")

SYSTEM_PROMPT = (
    "You are a strict JSON generator. Output ONLY a single JSON object that matches the provided schema. "
    "No prose, no markdown fences, no trailing text."
)

IMAGE_PROMPT = """
Analyze this image of a customer list (spreadsheet, printout or photo).
Extract one entry per data row with these fields:
- id: customer code / number exactly as printed
- name: customer name (short or full name)
- address: delivery address
- city: the city or county taken from the address (e.g. 台北市, 台中市)
Read every row carefully; skip header and total rows.
Return JSON of the form {"customers": [{"id": ..., "name": ..., "address": ..., "city": ...}]}.
""".strip()

CSV_PROMPT = """
Convert the following CSV content into structured customer records.
Map the columns intelligently:
- id: customer code / number
- name: customer name (short or full name)
- address: address / delivery address
- city: the city or county taken from the address (e.g. 台北市, 台中市)
Return JSON of the form {"customers": [{"id": ..., "name": ..., "address": ..., "city": ...}]}.

CSV content:
""".strip()


def customer_schema() -> Dict[str, Any]:
    row = {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "name": {"type": "string"},
            "address": {"type": "string"},
            "city": {"type": "string"},
        },
        "required": ["id", "name", "address", "city"],
        "additionalProperties": False,
    }
    return {
        "type": "object",
        "properties": {"customers": {"type": "array", "items": row}},
        "required": ["customers"],
        "additionalProperties": False,
    }


def rows_to_customers(payload: Any, *, source_name: str) -> List[Customer]:
    """Normalize the model's JSON into Customer records.

    Accepts a bare list or an object with a ``customers`` list. Rows without
    id/name/address are dropped.
    """
    if isinstance(payload, dict):
        rows = payload.get("customers")
        if rows is None and len(payload) == 1:
            rows = next(iter(payload.values()))
    else:
        rows = payload
    if not isinstance(rows, list):
        raise ExtractionFailure(f"Model output for {source_name} is not a list of customers", source_name=source_name)

    customers: List[Customer] = []
    dropped = 0
    for row in rows:
        if not isinstance(row, dict):
            dropped += 1
            continue
        cleaned = {k: row.get(k) for k in ("id", "name", "address", "city")}
        try:
            customers.append(Customer.from_dict(cleaned))
        except RecordValidationError as exc:
            dropped += 1
            LOG.debug("Dropping row from %s: %s (%r)", source_name, exc, row)
    if dropped:
        LOG.warning("Dropped %d incomplete row(s) extracted from %s", dropped, source_name)
    return customers


class LLMExtractionGateway(ExtractionGateway):
    """Extract customer rows from images or CSV text with a hosted LLM.

    Backends:
    - "openai": OpenAI SDK chat completions with a strict JSON schema
    - "openrouter": OpenRouter chat completions via requests (run in a worker thread)
    """

    def __init__(
        self,
        *,
        backend: str = "openai",
        model_name: str = "gpt-5-mini",
        openai_client: Optional[AsyncOpenAI] = None,
        openrouter_client: Optional[OpenRouterClient] = None,
        timeout: float = 120.0,
    ) -> None:
        if backend not in {"openai", "openrouter"}:
            raise ValueError(f"Unknown extraction backend: {backend}")
        if backend == "openai" and openai_client is None:
            raise ValueError("openai backend requires an OpenAI client")
        if backend == "openrouter" and openrouter_client is None:
            raise ValueError("openrouter backend requires an OpenRouter client")
        self.backend = backend
        self.model_name = model_name
        self.openai_client = openai_client
        self.openrouter_client = openrouter_client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "LLMExtractionGateway":
        if settings.extraction_backend == "openrouter":
            if not settings.openrouter_api_key:
                raise ValueError("OPEN_ROUTER_API_KEY missing in env/.env; cannot run extraction")
            client = OpenRouterClient(
                OpenRouterConfig(
                    api_key=settings.openrouter_api_key,
                    model_name=settings.openrouter_model,
                    timeout_seconds=settings.request_timeout,
                )
            )
            return cls(backend="openrouter", model_name=settings.openrouter_model, openrouter_client=client)
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY missing in env/.env; cannot run extraction")
        openai_client = build_async_openai(
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout,
        )
        return cls(
            backend="openai",
            model_name=settings.extraction_model,
            openai_client=openai_client,
            timeout=settings.request_timeout,
        )

    # ---- message building ----------------------------------------------------
    @staticmethod
    def _user_content(source: FileInput) -> Any:
        if source.kind == "csv":
            return f"{CSV_PROMPT}\n{source.content}"
        if source.kind == "image":
            return [
                {"type": "text", "text": IMAGE_PROMPT},
                {"type": "image_url", "image_url": {"url": source.data_url()}},
            ]
        raise ExtractionFailure(f"Unsupported input kind {source.kind!r} for {source.name}", source_name=source.name)

    def _messages(self, source: FileInput) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self._user_content(source)},
        ]

    # ---- backends -------------------------------------------------------------
    async def _call_openai(self, messages: List[Dict[str, Any]], source_name: str) -> str:
        if self.openai_client is None:
            raise ExtractionFailure(f"OpenAI client is not configured for {source_name}", source_name=source_name)
        try:
            completion = await self.openai_client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "customer_rows", "schema": customer_schema(), "strict": True},
                },
                timeout=self.timeout,
            )
        except (APIConnectionError, APITimeoutError) as exc:
            LOG.error("Network/timeout while calling OpenAI for %s: %s", source_name, exc)
            raise ExtractionFailure(f"Extraction failed for {source_name}: network error", source_name=source_name) from exc
        except APIStatusError as exc:
            LOG.error("OpenAI API returned %s for %s", getattr(exc, "status_code", "?"), source_name)
            raise ExtractionFailure(f"Extraction failed for {source_name}: API error", source_name=source_name) from exc
        except OpenAIError as exc:
            LOG.error("OpenAI extraction failed for %s: %s", source_name, exc)
            raise ExtractionFailure(f"Extraction failed for {source_name}", source_name=source_name) from exc

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice and getattr(choice, "message", None) else None
        usage = getattr(completion, "usage", None)
        LOG.debug(
            "Chat completion id=%s tokens=%s",
            getattr(completion, "id", None),
            getattr(usage, "total_tokens", None) if usage else None,
        )
        return text or ""

    async def _call_openrouter(self, messages: List[Dict[str, Any]], source_name: str) -> str:
        if self.openrouter_client is None:
            raise ExtractionFailure(f"OpenRouter client is not configured for {source_name}", source_name=source_name)
        try:
            return await asyncio.to_thread(self.openrouter_client.chat, messages)
        except LLMRequestError as exc:
            LOG.error("OpenRouter extraction failed for %s: %s", source_name, exc)
            raise ExtractionFailure(f"Extraction failed for {source_name}", source_name=source_name) from exc

    async def extract(self, source: FileInput) -> List[Customer]:
        messages = self._messages(source)
        LOG.info("Extracting customers from %s (%s) via %s model=%s", source.name, source.kind, self.backend, self.model_name)
        t0 = time.perf_counter()
        if self.backend == "openai":
            text = await self._call_openai(messages, source.name)
        else:
            text = await self._call_openrouter(messages, source.name)

        payload = scavenge_json_block(text)
        if payload is None:
            LOG.error("Model output for %s is not valid JSON; first 500 chars: %r", source.name, text[:500])
            raise ExtractionFailure(f"Extraction failed for {source.name}: unreadable model output", source_name=source.name)
        customers = rows_to_customers(payload, source_name=source.name)
        LOG.info("Extracted %d customer(s) from %s in %.2fs", len(customers), source.name, time.perf_counter() - t0)
        return customers
