"""
Source Factory - Creates content source adapters from configuration.
"""
import logging
from typing import Dict, List

from ingestion.base import SourceAdapter
from ingestion.reddit import RedditAdapter
from ingestion.hackernews import HackerNewsAdapter
from services.config import IngestionConfig, SourceConfig, get_enabled_sources

logger = logging.getLogger(__name__)


def create_source_adapter(source_type: str, ingestion_config: IngestionConfig) -> SourceAdapter:
    """
    Create the adapter that serves one source type.

    Raises:
        ValueError: If source type is unknown
    """
    source_type = source_type.lower()

    if source_type == "reddit":
        return RedditAdapter(limit=ingestion_config.posts_per_source)

    elif source_type == "hackernews":
        return HackerNewsAdapter(limit=ingestion_config.posts_per_source)

    else:
        raise ValueError(f"Unknown source type: {source_type}")


def create_adapters_from_config(ingestion_config: IngestionConfig) -> Dict[str, SourceAdapter]:
    """
    One adapter per enabled source type, keyed by type.
    Adapters are shared by every source of that type.
    """
    adapters: Dict[str, SourceAdapter] = {}

    for source_config in get_enabled_sources(ingestion_config):
        source_type = source_config.type.lower()
        if source_type in adapters:
            continue
        try:
            adapters[source_type] = create_source_adapter(source_type, ingestion_config)
            logger.info(f"Created {source_type} adapter")
        except ValueError as e:
            logger.error(f"Failed to create adapter for {source_config.type}: {e}")

    return adapters


def rotation_sources(ingestion_config: IngestionConfig, adapters: Dict[str, SourceAdapter]) -> List[SourceConfig]:
    """Enabled sources that have an adapter, in configured order."""
    return [
        src for src in get_enabled_sources(ingestion_config)
        if src.type.lower() in adapters
    ]
