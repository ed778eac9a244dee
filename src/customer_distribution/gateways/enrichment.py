"""Map link enrichment.

Enrichment is best-effort: every implementation returns the full input list,
with ``map_url`` filled in where a link was found, and never raises.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote_plus

from openai import AsyncOpenAI

from ..config import AppSettings
from ..domain.models import Customer
from ..logging import get_logger
from .base import EnrichmentGateway
from .llm import build_async_openai, scavenge_json_block

LOG = get_logger("enrichment")

MAPS_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query={query}"

GROUNDING_PROMPT = """
Find the Google Maps location link for each of the following customers.
Use web search to confirm each place. Only answer for places you actually found.
Return strict JSON: {"links": [{"id": "<customer id>", "mapUrl": "<https link>"}]}

Customers (JSON):
""".strip()


def _apply_links(records: Sequence[Customer], links: Dict[str, str]) -> List[Customer]:
    return [c.with_changes(map_url=links[c.id]) if c.id in links and not c.map_url else c for c in records]


def _missing_links(records: Sequence[Customer]) -> List[Customer]:
    return [c for c in records if not c.map_url]


class NullEnricher(EnrichmentGateway):
    async def enrich(self, records: Sequence[Customer]) -> List[Customer]:
        return list(records)


class SearchLinkEnricher(EnrichmentGateway):
    """Build a Google Maps search link from name and address (no network)."""

    async def enrich(self, records: Sequence[Customer]) -> List[Customer]:
        links = {}
        for c in _missing_links(records):
            query = " ".join(part for part in (c.name, c.address) if part)
            links[c.id] = MAPS_SEARCH_URL.format(query=quote_plus(query))
        return _apply_links(records, links)


class GroundedMapsEnricher(EnrichmentGateway):
    """Ask an OpenAI model with the web search tool for map links in one batch."""

    def __init__(self, client: AsyncOpenAI, *, model_name: str = "gpt-5-mini", timeout: float = 120.0) -> None:
        self.client = client
        self.model_name = model_name
        self.timeout = timeout

    @staticmethod
    def _parse_links(text: Optional[str], wanted: Sequence[str]) -> Dict[str, str]:
        data: Any = scavenge_json_block(text)
        rows = data.get("links") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            return {}
        allowed = set(wanted)
        links: Dict[str, str] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            cid = row.get("id")
            url = row.get("mapUrl")
            if not isinstance(cid, str) or cid not in allowed:
                continue
            if isinstance(url, str) and url.strip().lower().startswith(("https://", "http://")):
                links.setdefault(cid, url.strip())
        return links

    async def enrich(self, records: Sequence[Customer]) -> List[Customer]:
        to_search = _missing_links(records)
        if not to_search:
            return list(records)
        listing = json.dumps(
            [{"id": c.id, "name": c.name, "address": c.address} for c in to_search],
            ensure_ascii=False,
        )
        try:
            resp = await self.client.responses.create(
                model=self.model_name,
                tools=[{"type": "web_search"}],
                input=f"{GROUNDING_PROMPT}\n{listing}",
                timeout=self.timeout,
            )
            links = self._parse_links(getattr(resp, "output_text", None), [c.id for c in to_search])
        except Exception as exc:
            LOG.warning("Map grounding failed, keeping records without links: %s", exc)
            return list(records)
        LOG.info("Map grounding found %d of %d link(s)", len(links), len(to_search))
        return _apply_links(records, links)


def build_enricher(settings: AppSettings) -> EnrichmentGateway:
    backend = settings.enrichment_backend
    if backend == "off":
        return NullEnricher()
    if backend == "grounded":
        if not settings.openai_api_key:
            LOG.warning("ENRICHMENT_BACKEND=grounded needs OPENAI_API_KEY; using search links instead")
            return SearchLinkEnricher()
        client = build_async_openai(settings.openai_api_key, base_url=settings.openai_base_url, timeout=settings.request_timeout)
        return GroundedMapsEnricher(client, model_name=settings.enrichment_model, timeout=settings.request_timeout)
    return SearchLinkEnricher()
