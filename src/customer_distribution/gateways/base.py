from __future__ import annotations

from typing import List, Sequence

from ..domain.models import Customer, FileInput


class ExtractionGateway:
    """Turns one uploaded file into candidate customer records.

    Implementations raise ExtractionFailure when the underlying call fails; an
    empty list means the file held no recognizable rows.
    """

    async def extract(self, source: FileInput) -> List[Customer]:
        raise NotImplementedError


class EnrichmentGateway:
    """Best-effort map link lookup; must return the input list on any error."""

    async def enrich(self, records: Sequence[Customer]) -> List[Customer]:
        raise NotImplementedError
