"""Shared LLM transport helpers: OpenAI SDK client factory, OpenRouter wrapper, JSON scavenging."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import requests
from openai import AsyncOpenAI

from ..logging import get_logger

LOG = get_logger("llm")


def build_async_openai(api_key: str, *, base_url: Optional[str] = None, timeout: float = 120.0) -> AsyncOpenAI:
    http_client = httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(connect=10.0, read=timeout, write=30.0, pool=10.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=30),
    )
    if (os.environ.get("OPENAI_LOG") or "").lower() == "debug":
        logging.getLogger("httpx").setLevel(logging.DEBUG)
        logging.getLogger("httpcore").setLevel(logging.DEBUG)
    return AsyncOpenAI(
        api_key=api_key,
        base_url=base_url,
        http_client=http_client,
        max_retries=0,
    )


def scavenge_json_block(s: Optional[str]) -> Optional[Any]:
    """Parse model output that should be JSON but may carry fences or prose."""
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        pass

    candidates: List[str] = []

    fenced = re.search(r"```(?:json)?\s*(.*?)```", s, re.DOTALL)
    if fenced and fenced.group(1):
        candidates.append(fenced.group(1).strip())

    start_arr = s.find("[")
    end_arr = s.rfind("]")
    if start_arr != -1 and end_arr > start_arr:
        candidates.append(s[start_arr : end_arr + 1])

    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


class LLMRequestError(RuntimeError):
    pass


@dataclass
class OpenRouterConfig:
    api_key: str
    model_name: str
    timeout_seconds: float = 120.0
    temperature: float = 0.0
    max_tokens: int = 8000


class OpenRouterClient:
    """Thin wrapper around OpenRouter chat completions with helpful logging."""

    ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, config: OpenRouterConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def chat(self, messages: List[Dict[str, Any]], *, json_mode: bool = True) -> str:
        payload: Dict[str, Any] = {
            "model": self.config.model_name,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(
                self.ENDPOINT,
                headers=headers,
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise LLMRequestError(f"OpenRouter request failed: {exc}") from exc

        if resp.status_code >= 400:
            LOG.error("OpenRouter HTTP %s: %s", resp.status_code, resp.text[:500])
            raise LLMRequestError(f"OpenRouter HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise LLMRequestError("OpenRouter returned a non-JSON body") from exc
        choices = body.get("choices") or []
        if not choices:
            LOG.error("OpenRouter returned no choices: %s", body)
            raise LLMRequestError("OpenRouter returned no choices")
        message = choices[0].get("message") or {}
        return message.get("content") or ""
