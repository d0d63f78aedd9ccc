"""
Data shapes of the booking workflow.

Backend payloads are camelCase dicts; everything inside the bot uses these
dataclasses. `from_api` helpers are lenient about which of the backend's
historical field names are present.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

PICKUP = "pickup"
DESTINATION = "destination"
FIELDS = (PICKUP, DESTINATION)

TRUCK_TYPES = ("MINI_TRUCK", "PICKUP", "LORRY", "TRUCK")


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class ResolvedArea:
    """A geocoded location the user picked from the catalog."""

    id: str
    label: str
    address: str
    latitude: float
    longitude: float

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)

    @classmethod
    def from_api(cls, item: dict) -> Optional["ResolvedArea"]:
        """Build from either `{id,name,city,address,...}` or `{value,label,area,...}`."""
        lat = _as_float(item.get("latitude", item.get("lat")))
        lng = _as_float(item.get("longitude", item.get("lng")))
        if lat is None or lng is None:
            return None

        label = str(item.get("name") or item.get("label") or "").strip()
        if not label:
            return None

        address = item.get("address") or item.get("area")
        if not address:
            city = item.get("city")
            address = f"{label}, {city}" if city else label

        area_id = item.get("id") or item.get("value") or label
        return cls(
            id=str(area_id),
            label=label,
            address=str(address).strip(),
            latitude=lat,
            longitude=lng,
        )


@dataclass
class BookingDraft:
    """Scratch state of the trip being booked."""

    source: str = ""
    destination: str = ""
    pickup_time: Optional[datetime] = None
    fare: float = 0.0
    distance: float = 0.0
    source_coord: Optional[Coordinates] = None
    dest_coord: Optional[Coordinates] = None

    def clear_fare(self) -> None:
        self.fare = 0.0
        self.distance = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.source and not self.destination and not self.fare


@dataclass(frozen=True)
class FareQuote:
    total_fare: float
    distance: float
    breakdown: dict = field(default_factory=dict)
    is_fallback: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "FareQuote":
        total = _as_float(data.get("totalFare"))
        if total is None:
            raise ValueError("fare response has no totalFare")
        return cls(
            total_fare=total,
            distance=_as_float(data.get("distance")) or 0.0,
            breakdown=dict(data.get("breakdown") or {}),
        )


@dataclass(frozen=True)
class RouteDetails:
    distance: float
    duration: float
    route_geometry: Any = None
    waypoints: tuple = ()

    @classmethod
    def from_api(cls, data: dict) -> "RouteDetails":
        waypoints = []
        for point in data.get("waypoints") or []:
            lat = _as_float(point.get("latitude"))
            lng = _as_float(point.get("longitude"))
            if lat is not None and lng is not None:
                waypoints.append(Coordinates(lat, lng))
        return cls(
            distance=_as_float(data.get("distance")) or 0.0,
            duration=_as_float(data.get("duration")) or 0.0,
            route_geometry=data.get("routeGeometry"),
            waypoints=tuple(waypoints),
        )


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or the error that prevented it."""

    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


@dataclass(frozen=True)
class BookingRecord:
    id: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: str
    address: str
    city: str
    post_code: str
    country: str

    def to_api(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "postCode": self.post_code,
            "country": self.country,
        }


@dataclass(frozen=True)
class PaymentSession:
    booking_id: str
    customer_info: CustomerInfo
    gateway_url: str


@dataclass(frozen=True)
class Driver:
    id: str
    name: str
    truck_type: str
    capacity: float = 0.0
    location: str = ""
    rating: float = 0.0

    @classmethod
    def from_api(cls, item: dict) -> "Driver":
        user = item.get("user") or {}
        return cls(
            id=str(item["id"]),
            name=str(user.get("name") or item.get("name") or "—"),
            truck_type=str(item.get("truckType") or "TRUCK"),
            capacity=_as_float(item.get("capacity")) or 0.0,
            location=str(item.get("location") or ""),
            rating=_as_float(item.get("rating")) or 0.0,
        )


@dataclass
class UserSession:
    id: str
    name: str
    email: str
    phone: str
    token: str
