"""Narrow async interfaces over the hosted AI services, plus file loading helpers."""

from .base import EnrichmentGateway, ExtractionGateway
from .enrichment import GroundedMapsEnricher, NullEnricher, SearchLinkEnricher, build_enricher
from .extraction import LLMExtractionGateway
from .files import list_input_paths, load_file_input

__all__ = [
    "EnrichmentGateway",
    "ExtractionGateway",
    "GroundedMapsEnricher",
    "NullEnricher",
    "SearchLinkEnricher",
    "build_enricher",
    "LLMExtractionGateway",
    "list_input_paths",
    "load_file_input",
]
