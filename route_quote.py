"""
Fare and route quotes from the backend.

Both calls are plain request/response; no geography is computed locally.
A fare failure raises QuoteError, a route failure raises RouteError.
"""
import logging

from errors import QuoteError, RouteError
from http_client import ApiClient, ApiError
from models import Coordinates, FareQuote, RouteDetails

logger = logging.getLogger(__name__)


def _location(coord: Coordinates, address: str = "") -> dict:
    payload = {"latitude": coord.latitude, "longitude": coord.longitude}
    if address:
        payload["address"] = address
    return payload


class RouteQuoteService:
    def __init__(self, api: ApiClient):
        self._api = api

    async def quote_fare(
        self,
        source: Coordinates,
        destination: Coordinates,
        truck_type: str,
        *,
        source_address: str = "",
        destination_address: str = "",
    ) -> FareQuote:
        payload = {
            "source": _location(source, source_address),
            "destination": _location(destination, destination_address),
            "truckType": truck_type,
        }
        try:
            data = await self._api.post("fare-calculation/calculate", payload)
        except ApiError as e:
            logger.warning("Fare quote failed (status=%s): %s", e.status, e.message)
            raise QuoteError(detail=e.message) from e

        if not isinstance(data, dict):
            raise QuoteError(detail="empty fare response")
        try:
            quote = FareQuote.from_api(data)
        except ValueError as e:
            raise QuoteError(detail=str(e)) from e
        if quote.total_fare <= 0:
            raise QuoteError(detail=f"non-positive fare {quote.total_fare}")
        return quote

    async def quote_route(self, source: Coordinates, destination: Coordinates) -> RouteDetails:
        payload = {
            "source": _location(source),
            "destination": _location(destination),
        }
        try:
            data = await self._api.post("fare-calculation/route-details", payload)
        except ApiError as e:
            logger.info("Route preview failed (status=%s): %s", e.status, e.message)
            raise RouteError(detail=e.message) from e

        if not isinstance(data, dict):
            raise RouteError(detail="empty route response")
        return RouteDetails.from_api(data)
