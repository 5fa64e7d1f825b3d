"""Related titles and watch availability, cached on the MediaRecord.

Both lookups read the record's artifact first and only ask the metadata
provider when it is missing or expired. Similar titles are stored as record
ids, so every related title also becomes a MediaRecord the cascade can
resolve locally later on.
"""

from __future__ import annotations

import logging

from clip_sense.capabilities.ports import MetadataProvider
from clip_sense.capabilities.schemas import WatchAvailability
from clip_sense.errors import CapabilityUnavailable
from clip_sense.models import ArtifactKind, MediaRecord
from clip_sense.recognition.cache_resolver import CacheResolver

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "US"


class RelatedTitles:
    """Cache-through access to similar titles and streaming availability."""

    def __init__(self, resolver: CacheResolver, metadata: MetadataProvider | None) -> None:
        self._resolver = resolver
        self._metadata = metadata

    async def similar(self, record: MediaRecord) -> list[MediaRecord]:
        """Titles related to ``record``, stored locally.

        Raises:
            CapabilityUnavailable: Nothing cached and no metadata provider.
        """
        cached = self._resolver.fresh_artifact(record, ArtifactKind.SIMILAR)
        if isinstance(cached, list):
            logger.debug("Similar titles for %s served from cache", record.display_title)
            return await self._resolver.get_many([int(i) for i in cached])

        metadata = self._require_metadata()
        titles = await metadata.get_similar(record.external_id)
        related: list[MediaRecord] = []
        for title in titles:
            if title.external_id == record.external_id:
                continue
            related.append(await self._resolver.create_if_absent(title))

        await self._resolver.store_artifact(
            record.record_id, ArtifactKind.SIMILAR, [r.record_id for r in related]
        )
        logger.info("Cached %d similar titles for %s", len(related), record.display_title)
        return related

    async def availability(
        self, record: MediaRecord, country: str = DEFAULT_COUNTRY
    ) -> WatchAvailability:
        """Where ``record`` can be watched in ``country``.

        The cache holds one country at a time; asking for another refetches.

        Raises:
            CapabilityUnavailable: Nothing cached and no metadata provider.
        """
        country = country.upper()
        cached = self._resolver.fresh_artifact(record, ArtifactKind.AVAILABILITY)
        if isinstance(cached, dict) and cached.get("country") == country:
            return WatchAvailability.model_validate(cached)

        metadata = self._require_metadata()
        availability = await metadata.get_availability(record.external_id, country)
        await self._resolver.store_artifact(
            record.record_id, ArtifactKind.AVAILABILITY, availability.model_dump(mode="json")
        )
        return availability

    def _require_metadata(self) -> MetadataProvider:
        if self._metadata is None:
            raise CapabilityUnavailable("metadata", "TMDB API key not configured")
        return self._metadata
