"""
area_index.py - Catalog of named, geocoded locations for pickup/destination lookup.

The catalog is fetched once per workflow instance and searched locally.
Lookups are debounced per field; a lookup superseded by a newer one for the
same field returns None instead of results.
"""

import asyncio
import logging
from typing import Optional

from http_client import ApiClient, ApiError
from models import FIELDS, ResolvedArea

logger = logging.getLogger(__name__)


def _check_field(field: str) -> None:
    if field not in FIELDS:
        raise ValueError(f"unknown location field: {field!r}")


def _extract_items(data) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("areas", "data", "items"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


class AreaIndex:
    def __init__(
        self,
        api: ApiClient,
        *,
        load_limit: int = 500,
        query_limit: int = 50,
        debounce_seconds: float = 0.3,
    ):
        self._api = api
        self.load_limit = load_limit
        self.query_limit = query_limit
        self.debounce_seconds = debounce_seconds
        self._areas: Optional[list[ResolvedArea]] = None
        self._by_id: dict[str, ResolvedArea] = {}
        self._load_lock = asyncio.Lock()
        self._generations = {field: 0 for field in FIELDS}

    @property
    def loaded(self) -> bool:
        return self._areas is not None

    @property
    def areas(self) -> list[ResolvedArea]:
        return list(self._areas or [])

    async def load(self) -> list[ResolvedArea]:
        """
        Fetch the catalog once. A failure leaves an empty catalog
        (no suggestions) rather than raising.
        """
        async with self._load_lock:
            if self._areas is not None:
                return self._areas

            try:
                data = await self._api.get("area-search/dropdown", params={"limit": self.load_limit})
            except ApiError as e:
                logger.warning("Area catalog unavailable, continuing without suggestions: %s", e.message)
                self._areas = []
                return self._areas

            areas: list[ResolvedArea] = []
            for item in _extract_items(data):
                if not isinstance(item, dict):
                    continue
                area = ResolvedArea.from_api(item)
                if area is None or area.id in self._by_id:
                    continue
                areas.append(area)
                self._by_id[area.id] = area
                if len(areas) >= self.load_limit:
                    break

            self._areas = areas
            logger.info("Area catalog loaded: %s entries", len(areas))
            return self._areas

    def get(self, area_id: str) -> Optional[ResolvedArea]:
        return self._by_id.get(area_id)

    def query(self, text: str, field: str) -> list[ResolvedArea]:
        """
        Case-insensitive match against label or address.

        Ranking: label prefix, then label substring, then address substring;
        ties keep catalog order.
        """
        _check_field(field)
        areas = self._areas or []
        needle = (text or "").strip().casefold()
        if not needle:
            return areas[:self.query_limit]

        ranked = []
        for pos, area in enumerate(areas):
            label = area.label.casefold()
            if label.startswith(needle):
                rank = 0
            elif needle in label:
                rank = 1
            elif needle in area.address.casefold():
                rank = 2
            else:
                continue
            ranked.append((rank, pos, area))

        ranked.sort(key=lambda r: (r[0], r[1]))
        return [area for _, _, area in ranked[:self.query_limit]]

    async def lookup(self, text: str, field: str) -> Optional[list[ResolvedArea]]:
        """Debounced query; None when a newer lookup for this field took over."""
        _check_field(field)
        self._generations[field] += 1
        generation = self._generations[field]

        if self.debounce_seconds > 0:
            await asyncio.sleep(self.debounce_seconds)
        if generation != self._generations[field]:
            return None

        await self.load()
        if generation != self._generations[field]:
            return None

        return self.query(text, field)
