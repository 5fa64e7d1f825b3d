"""TMDB adapter for the metadata provider capability.

External ids are namespaced as ``tmdb:<media_type>:<id>`` (``tmdb:movie:603``,
``tmdb:tv:1396``) so movie and TV ids never collide in the store.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from clip_sense.capabilities.schemas import (
    CastMember,
    ExternalTitle,
    FilmographyCredit,
    WatchAvailability,
    WatchProvider,
)
from clip_sense.config import settings
from clip_sense.errors import CapabilityUnavailable
from clip_sense.governor import CapabilityKind, RateLimiterRegistry
from clip_sense.models import MediaType

logger = logging.getLogger(__name__)

EXTERNAL_ID_PREFIX = "tmdb"

# Cast entries kept per title
MAX_CAST = 15

# Related titles kept per title
MAX_SIMILAR = 6

# TMDB watch-provider buckets and the offer each one stands for
OFFER_KINDS: dict[str, str] = {
    "flatrate": "subscription",
    "free": "free",
    "ads": "ads",
    "rent": "rent",
    "buy": "buy",
}


def format_external_id(media_type: MediaType, tmdb_id: int | str) -> str:
    """
    >>> format_external_id(MediaType.MOVIE, 603)
    'tmdb:movie:603'
    """
    return f"{EXTERNAL_ID_PREFIX}:{media_type.value}:{tmdb_id}"


def parse_external_id(external_id: str) -> tuple[MediaType, int]:
    """Split a TMDB external id into media type and numeric id.

    Raises:
        ValueError: The id is not a TMDB id.
    """
    parts = external_id.split(":")
    if len(parts) != 3 or parts[0] != EXTERNAL_ID_PREFIX or not parts[2].isdigit():
        raise ValueError(f"Not a TMDB external id: {external_id!r}")
    return MediaType(parts[1]), int(parts[2])


def _year(date: str | None) -> int | None:
    if date and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def _title_of(item: dict[str, Any], media_type: MediaType) -> str:
    if media_type is MediaType.TV:
        return item.get("name") or item.get("original_name") or ""
    return item.get("title") or item.get("original_title") or ""


def _date_of(item: dict[str, Any], media_type: MediaType) -> str | None:
    return item.get("first_air_date") if media_type is MediaType.TV else item.get("release_date")


def rank_search_results(
    results: list[dict[str, Any]], title: str, year: int | None
) -> list[dict[str, Any]]:
    """Order multi-search results: exact title and year, exact title, same year, rest.

    Non movie/TV results are dropped; the provider's order breaks ties.
    """
    wanted = title.strip().lower()

    def rank(item: dict[str, Any]) -> int:
        media_type = MediaType(item["media_type"])
        exact = _title_of(item, media_type).strip().lower() == wanted
        same_year = year is not None and _year(_date_of(item, media_type)) == year
        if exact and same_year:
            return 0
        if exact:
            return 1
        if same_year:
            return 2
        return 3

    media = [r for r in results if r.get("media_type") in ("movie", "tv")]
    return sorted(media, key=rank)


class TMDBClient:
    """Async TMDB client. Every request acquires the ``metadata`` rate limiter."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        image_base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        rate_limiters: RateLimiterRegistry | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.tmdb_api_key
        self._image_base_url = image_base_url or settings.tmdb_image_base_url
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.tmdb_base_url, timeout=timeout_seconds
        )
        self._limiters = rate_limiters or RateLimiterRegistry.from_settings()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Titles ───────────────────────────────────────────────────────────────

    async def search_title(self, title: str, year: int | None = None) -> list[ExternalTitle]:
        """Search movies and TV together; the best match comes back with full details."""
        data = await self._get("/search/multi", query=title)
        ranked = rank_search_results(data.get("results") or [], title, year)
        if not ranked:
            return []

        titles = [self._to_external(item, MediaType(item["media_type"])) for item in ranked]
        best = await self.get_by_external_id(titles[0].external_id)
        if best is not None:
            titles[0] = best
        return titles

    async def get_by_external_id(self, external_id: str) -> ExternalTitle | None:
        try:
            media_type, tmdb_id = parse_external_id(external_id)
        except ValueError:
            logger.debug("Ignoring non-TMDB external id %s", external_id)
            return None
        data = await self._get(
            f"/{media_type.value}/{tmdb_id}",
            allow_missing=True,
            append_to_response="external_ids",
        )
        if not data:
            return None
        return self._to_external(data, media_type)

    async def get_cast(self, external_id: str) -> list[CastMember]:
        media_type, tmdb_id = parse_external_id(external_id)
        data = await self._get(f"/{media_type.value}/{tmdb_id}/credits")
        return [
            CastMember(
                name=member.get("name", ""),
                character=member.get("character"),
                order=member.get("order", index),
            )
            for index, member in enumerate((data.get("cast") or [])[:MAX_CAST])
            if member.get("name")
        ]

    async def get_similar(self, external_id: str) -> list[ExternalTitle]:
        """Provider recommendations of the same media type, in the provider's order."""
        media_type, tmdb_id = parse_external_id(external_id)
        data = await self._get(f"/{media_type.value}/{tmdb_id}/similar", allow_missing=True)
        titles = [
            self._to_external(item, media_type)
            for item in data.get("results") or []
            if _title_of(item, media_type) and item.get("id") != tmdb_id
        ]
        return titles[:MAX_SIMILAR]

    async def get_availability(self, external_id: str, country: str) -> WatchAvailability:
        """Watch offers in one country; an unknown title or country has none."""
        media_type, tmdb_id = parse_external_id(external_id)
        data = await self._get(
            f"/{media_type.value}/{tmdb_id}/watch/providers", allow_missing=True
        )
        entry = (data.get("results") or {}).get(country.upper()) or {}
        providers: list[WatchProvider] = []
        for bucket, offer in OFFER_KINDS.items():
            for item in entry.get(bucket) or []:
                name = item.get("provider_name")
                if name:
                    providers.append(
                        WatchProvider(
                            name=name, offer=offer, logo_url=self._image_url(item.get("logo_path"))
                        )
                    )
        return WatchAvailability(
            country=country.upper(), link=entry.get("link"), providers=providers
        )

    # ── People ───────────────────────────────────────────────────────────────

    async def search_person(self, name: str) -> str | None:
        data = await self._get("/search/person", query=name)
        results = data.get("results") or []
        if not results:
            return None
        return str(results[0]["id"])

    async def get_filmography(self, person_id: str) -> list[FilmographyCredit]:
        """Movie and TV credits, most popular first."""
        data = await self._get(f"/person/{person_id}/combined_credits")
        credits: list[FilmographyCredit] = []
        for item in data.get("cast") or []:
            if item.get("media_type") not in ("movie", "tv"):
                continue
            media_type = MediaType(item["media_type"])
            title = _title_of(item, media_type)
            if not title:
                continue
            credits.append(
                FilmographyCredit(
                    external_id=format_external_id(media_type, item["id"]),
                    title=title,
                    year=_year(_date_of(item, media_type)),
                    media_type=media_type,
                    popularity=item.get("popularity") or 0.0,
                    character=item.get("character"),
                )
            )
        credits.sort(key=lambda c: c.popularity, reverse=True)
        return credits

    # ── Internals ────────────────────────────────────────────────────────────

    def _image_url(self, path: str | None) -> str | None:
        return f"{self._image_base_url}{path}" if path else None

    def _to_external(self, item: dict[str, Any], media_type: MediaType) -> ExternalTitle:
        imdb_id = item.get("imdb_id") or (item.get("external_ids") or {}).get("imdb_id")
        return ExternalTitle(
            external_id=format_external_id(media_type, item["id"]),
            title=_title_of(item, media_type),
            year=_year(_date_of(item, media_type)),
            media_type=media_type,
            imdb_id=imdb_id or None,
            overview=item.get("overview") or None,
            poster_url=self._image_url(item.get("poster_path")),
            backdrop_url=self._image_url(item.get("backdrop_path")),
            popularity=item.get("popularity"),
        )

    async def _get(
        self, path: str, *, allow_missing: bool = False, **params: Any
    ) -> dict[str, Any]:
        if not self._api_key:
            raise CapabilityUnavailable("metadata", "TMDB API key not configured")

        await self._limiters.acquire(CapabilityKind.METADATA)
        start_time = time.time()
        response = await self._client.get(path, params={"api_key": self._api_key, **params})
        if settings.log_api_calls:
            logger.info(
                "[TMDB] GET %s → %d (%.0fms)",
                path, response.status_code, (time.time() - start_time) * 1000
            )
        if allow_missing and response.status_code == 404:
            return {}
        response.raise_for_status()
        return response.json()
