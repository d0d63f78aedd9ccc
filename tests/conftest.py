import inspect
from datetime import datetime, timedelta

import pytest

from booking_workflow import BookingWorkflow
from config import WorkflowSettings
from http_client import ApiError
from models import Driver, UserSession

AREAS = [
    {"value": "1", "label": "Gulshan 1", "area": "Gulshan, Dhaka", "latitude": 23.7808, "longitude": 90.4152},
    {"value": "2", "label": "Motijheel", "area": "Motijheel, Dhaka", "latitude": 23.7330, "longitude": 90.4172},
    {"value": "3", "label": "Dhanmondi", "area": "Dhanmondi, Dhaka", "latitude": 23.7461, "longitude": 90.3742},
    {"value": "4", "label": "Banani", "area": "Banani, Dhaka", "latitude": 23.7937, "longitude": 90.4066},
    {"value": "5", "label": "Uttara", "area": "Uttara, Dhaka", "latitude": 23.8759, "longitude": 90.3795},
    {"value": "6", "label": "Agrabad", "area": "Agrabad, Chattogram", "latitude": 22.3256, "longitude": 91.8123},
]

GATEWAY_URL = "https://sandbox.sslcommerz.com/gwprocess/v4/gw.php?Q=pay&SESSIONKEY=xyz"


class FakeApi:
    """
    Stands in for ApiClient. Routes map a path to a value, an exception,
    or a (possibly async) callable taking the request payload.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    async def get(self, path, *, params=None, max_retries=3):
        return await self._handle("GET", path, params)

    async def post(self, path, json_data=None, *, max_retries=3):
        return await self._handle("POST", path, json_data)

    async def _handle(self, method, path, payload):
        self.calls.append((method, path, payload))
        handler = self.routes.get(path)
        if handler is None:
            raise ApiError(f"no route for {path}", status=404)
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            result = handler(payload)
            if inspect.isawaitable(result):
                result = await result
            return result
        return handler

    def calls_to(self, path):
        return [payload for _, p, payload in self.calls if p == path]


@pytest.fixture
def api():
    return FakeApi({
        "area-search/dropdown": AREAS,
        "fare-calculation/calculate": {
            "totalFare": 450,
            "distance": 6.2,
            "breakdown": {"baseFare": 200, "distanceFare": 250},
        },
        "fare-calculation/route-details": {
            "distance": 6.2,
            "duration": 24,
            "routeGeometry": None,
            "waypoints": [],
        },
        "bookings": {"id": "abc123", "status": "PENDING"},
        "sslcommerz/initiate": {"gatewayUrl": GATEWAY_URL},
    })


@pytest.fixture
def driver():
    return Driver(id="drv-1", name="Karim", truck_type="MINI_TRUCK", capacity=1.5, location="Dhaka", rating=4.7)


@pytest.fixture
def user_session():
    return UserSession(id="u-1", name="Rahim Uddin", email="rahim@example.com", phone="01711000000", token="jwt-token")


@pytest.fixture
def settings():
    return WorkflowSettings(
        lookup_debounce_seconds=0,
        payment_timeout_seconds=1,
        fare_fallback_enabled=False,
    )


@pytest.fixture
def tomorrow():
    return datetime.now() + timedelta(days=1)


@pytest.fixture
def make_workflow(api, driver, user_session, settings):
    def _make(session=user_session, settings=settings, api=api):
        return BookingWorkflow.create(api, driver, session_provider=lambda: session, settings=settings)
    return _make


@pytest.fixture
async def ready_workflow(make_workflow, tomorrow):
    """Open workflow with Gulshan 1 -> Motijheel picked and quoted."""
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))
    wf.set_pickup_time(tomorrow)
    return wf
