"""
Available trucks/drivers, fetched through the paginated search endpoint.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from http_client import ApiClient, ApiError
from models import Driver

logger = logging.getLogger(__name__)


@dataclass
class Page:
    data: list = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0
    total_pages: int = 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def _parse_page(data, page: int, limit: int) -> Page:
    """Accept `{data, pagination}`, `{drivers, pagination}` or a bare list."""
    if isinstance(data, list):
        items, pagination = data, {}
    elif isinstance(data, dict):
        items = data.get("data") or data.get("drivers") or []
        pagination = data.get("pagination") or {}
    else:
        items, pagination = [], {}

    drivers = []
    for item in items:
        if isinstance(item, dict) and item.get("id"):
            drivers.append(Driver.from_api(item))

    total = int(pagination.get("total", len(drivers)) or 0)
    return Page(
        data=drivers,
        page=int(pagination.get("page", page) or page),
        limit=int(pagination.get("limit", limit) or limit),
        total=total,
        total_pages=max(1, int(pagination.get("totalPages", 1) or 1)),
    )


class DriverDirectory:
    def __init__(self, api: ApiClient):
        self._api = api
        self._seen: dict[str, Driver] = {}

    async def list_available(self, page: int = 1, limit: int = 8) -> Page:
        try:
            data = await self._api.get(
                "drivers/search",
                params={"page": page, "limit": limit, "isAvailable": "true"},
            )
        except ApiError as e:
            logger.warning("Driver search failed (status=%s): %s", e.status, e.message)
            return Page(page=page, limit=limit)

        result = _parse_page(data, page, limit)
        for driver in result.data:
            self._seen[driver.id] = driver
        return result

    def get(self, driver_id: str) -> Optional[Driver]:
        """Drivers from pages already listed in this process."""
        return self._seen.get(driver_id)
