import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from booking_workflow import parse_pickup_time
from config import WorkflowSettings
from conftest import GATEWAY_URL
from errors import (
    AuthRequired,
    BookingCreationError,
    BookingNotFound,
    GatewayUnavailable,
    InvalidTransition,
    PaymentTimeout,
    PaymentUnknown,
    QuoteError,
    ValidationError,
)
from html_utils import format_fare
from http_client import ApiError
from states import WorkflowState


# ============== opening / locations ==============

async def test_open_loads_areas_and_prefills_contact(make_workflow, api):
    wf = make_workflow()
    await wf.open()

    assert wf.state is WorkflowState.BOOKING
    assert len(wf.areas.areas) == 6
    assert wf.contact == {"name": "Rahim Uddin", "email": "rahim@example.com", "phone": "01711000000"}
    assert len(api.calls_to("area-search/dropdown")) == 1


async def test_open_twice_is_rejected(make_workflow):
    wf = make_workflow()
    await wf.open()
    with pytest.raises(InvalidTransition):
        await wf.open()


async def test_search_sets_text_and_returns_matches(make_workflow):
    wf = make_workflow()
    await wf.open()

    results = await wf.search("pickup", "gul")

    assert [a.label for a in results] == ["Gulshan 1"]
    assert wf.draft.source == "gul"
    assert wf.resolved("pickup") is None


async def test_quote_enables_continue(ready_workflow, api):
    wf = ready_workflow

    assert wf.draft.source == "Gulshan 1"
    assert wf.draft.destination == "Motijheel"
    assert wf.draft.fare == 450
    assert wf.draft.distance == 6.2
    assert wf.can_continue
    assert format_fare(wf.draft.fare) == "৳450"
    assert wf.route_outcome.ok
    assert wf.route_outcome.value.duration == 24

    payload = api.calls_to("fare-calculation/calculate")[-1]
    assert payload["truckType"] == "MINI_TRUCK"
    assert payload["source"]["latitude"] == 23.7808
    assert payload["destination"]["longitude"] == 90.4172


async def test_first_location_alone_does_not_quote(make_workflow, api):
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))

    assert api.calls_to("fare-calculation/calculate") == []
    assert wf.fare_outcome is None
    assert not wf.can_continue


async def test_editing_text_clears_resolution_and_fare(ready_workflow):
    wf = ready_workflow

    wf.set_text("pickup", "Gulshan 2")

    assert wf.resolved("pickup") is None
    assert wf.draft.source_coord is None
    assert wf.draft.fare == 0
    assert wf.fare_outcome is None
    assert not wf.can_continue


async def test_same_text_keeps_resolution(ready_workflow):
    wf = ready_workflow
    wf.set_text("pickup", "Gulshan 1")
    assert wf.resolved("pickup") is not None
    assert wf.can_continue


async def test_unchanged_pair_is_not_requoted(ready_workflow, api):
    wf = ready_workflow
    before = len(api.calls_to("fare-calculation/calculate"))

    await wf.refresh_quotes()

    assert len(api.calls_to("fare-calculation/calculate")) == before


async def test_stale_quote_is_dropped(make_workflow, api):
    release = asyncio.Event()

    async def fare(payload):
        # Motijheel is slow, Dhanmondi answers at once
        if payload["destination"]["latitude"] == 23.7330:
            await release.wait()
            return {"totalFare": 450, "distance": 6.2}
        return {"totalFare": 700, "distance": 9.8}

    api.routes["fare-calculation/calculate"] = fare
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))

    slow = asyncio.create_task(wf.select_area("destination", wf.areas.get("2")))
    await asyncio.sleep(0)
    await wf.select_area("destination", wf.areas.get("3"))
    release.set()
    await slow

    assert wf.draft.destination == "Dhanmondi"
    assert wf.draft.fare == 700
    assert wf.fare_outcome.value.total_fare == 700


# ============== quote failures ==============

async def test_fare_failure_blocks_continue_without_fallback(make_workflow, api, tomorrow):
    api.routes["fare-calculation/calculate"] = ApiError("pricing down", status=500)
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))
    wf.set_pickup_time(tomorrow)

    assert isinstance(wf.quote_error, QuoteError)
    assert wf.draft.fare == 0
    assert not wf.can_continue
    with pytest.raises(ValidationError):
        await wf.submit_booking()
    assert api.calls_to("bookings") == []


async def test_fare_failure_uses_default_when_fallback_enabled(make_workflow, api):
    api.routes["fare-calculation/calculate"] = ApiError("pricing down", status=500)
    wf = make_workflow(settings=WorkflowSettings(lookup_debounce_seconds=0, fare_fallback_enabled=True))
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))

    assert wf.quote_error is None
    assert wf.draft.fare == 500
    assert wf.draft.distance == 10
    assert wf.fare_outcome.value.is_fallback
    assert wf.can_continue


async def test_failed_requote_clears_previous_fare(ready_workflow, api):
    wf = ready_workflow
    assert wf.draft.fare == 450

    def fare(payload):
        if payload["destination"]["latitude"] == 23.7461:
            raise ApiError("no tariff for this zone", status=422)
        return {"totalFare": 450, "distance": 6.2}

    api.routes["fare-calculation/calculate"] = fare
    await wf.select_area("destination", wf.areas.get("3"))

    assert wf.draft.destination == "Dhanmondi"
    assert wf.draft.fare == 0
    assert wf.draft.distance == 0
    assert isinstance(wf.quote_error, QuoteError)
    assert not wf.can_continue


async def test_route_failure_does_not_block(make_workflow, api):
    api.routes["fare-calculation/route-details"] = ApiError("osrm down", status=502)
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))

    assert not wf.route_outcome.ok
    assert wf.can_continue


# ============== booking creation ==============

async def test_submit_booking_posts_payload_and_moves_to_payment(ready_workflow, api):
    wf = ready_workflow

    record = await wf.submit_booking()

    assert record.id == "abc123"
    assert wf.booking_id == "abc123"
    assert wf.state is WorkflowState.PAYMENT
    assert api.calls_to("bookings") == [{
        "driverId": "drv-1",
        "source": "Gulshan 1",
        "destination": "Motijheel",
        "sourceLat": 23.7808,
        "sourceLng": 90.4152,
        "destLat": 23.7330,
        "destLng": 90.4172,
        "distance": 6.2,
        "fare": 450,
    }]


async def test_unauthenticated_submit_makes_no_request(make_workflow, api, tomorrow):
    wf = make_workflow(session=None)
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))
    wf.set_pickup_time(tomorrow)

    with pytest.raises(AuthRequired):
        await wf.submit_booking()

    assert api.calls_to("bookings") == []
    assert wf.state is WorkflowState.BOOKING


async def test_missing_pickup_time_is_a_validation_error(make_workflow, api):
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))

    with pytest.raises(ValidationError):
        await wf.submit_booking()
    assert api.calls_to("bookings") == []


async def test_booking_failure_stays_in_booking(ready_workflow, api):
    api.routes["bookings"] = ApiError("driver unavailable", status=400)
    wf = ready_workflow

    with pytest.raises(BookingCreationError):
        await wf.submit_booking()

    assert wf.state is WorkflowState.BOOKING
    assert wf.booking is None


async def test_back_then_continue_reuses_booking(ready_workflow, api):
    wf = ready_workflow
    await wf.submit_booking()
    wf.back()

    assert wf.state is WorkflowState.BOOKING
    await wf.submit_booking()

    assert wf.state is WorkflowState.PAYMENT
    assert len(api.calls_to("bookings")) == 1


async def test_trip_is_locked_while_booking_is_created(ready_workflow, api, tomorrow):
    release = asyncio.Event()

    async def slow_booking(payload):
        await release.wait()
        return {"id": "abc123"}

    api.routes["bookings"] = slow_booking
    wf = ready_workflow

    task = asyncio.create_task(wf.submit_booking())
    await asyncio.sleep(0)
    assert wf.booking_in_progress

    with pytest.raises(InvalidTransition):
        wf.set_text("pickup", "Somewhere else")
    with pytest.raises(InvalidTransition):
        await wf.select_area("destination", wf.areas.get("3"))
    with pytest.raises(InvalidTransition):
        wf.set_pickup_time(tomorrow + timedelta(hours=1))

    release.set()
    await task

    assert wf.state is WorkflowState.PAYMENT
    assert not wf.booking_in_progress
    assert wf.draft.source == "Gulshan 1"
    assert wf.draft.destination == "Motijheel"
    assert wf.resolved("pickup") is not None
    assert wf.draft.fare == 450
    assert api.calls_to("bookings")[0]["source"] == wf.draft.source


async def test_concurrent_submits_post_one_booking(ready_workflow, api):
    release = asyncio.Event()

    async def slow_booking(payload):
        await release.wait()
        return {"id": "abc123"}

    api.routes["bookings"] = slow_booking
    wf = ready_workflow

    first = asyncio.create_task(wf.submit_booking())
    await asyncio.sleep(0)
    with pytest.raises(InvalidTransition):
        await wf.submit_booking()

    release.set()
    record = await first

    assert record.id == "abc123"
    assert wf.state is WorkflowState.PAYMENT
    assert len(api.calls_to("bookings")) == 1


async def test_locations_locked_once_booked(ready_workflow):
    wf = ready_workflow
    await wf.submit_booking()
    wf.back()

    with pytest.raises(ValidationError):
        wf.set_text("destination", "Dhanmondi")
    with pytest.raises(ValidationError):
        await wf.select_area("destination", wf.areas.get("3"))
    assert wf.draft.destination == "Motijheel"


# ============== payment ==============

async def test_successful_payment_hands_off_gateway_url(ready_workflow, api):
    wf = ready_workflow
    await wf.submit_booking()
    navigate = AsyncMock()

    session = await wf.submit_payment(navigate)

    navigate.assert_awaited_once_with(GATEWAY_URL)
    assert session.gateway_url == GATEWAY_URL
    assert wf.state is WorkflowState.SUCCESS
    payload = api.calls_to("sslcommerz/initiate")[0]
    assert payload["bookingId"] == "abc123"
    assert payload["customerInfo"] == {
        "name": "Rahim Uddin",
        "email": "rahim@example.com",
        "phone": "01711000000",
        "address": "Gulshan 1",
        "city": "Motijheel",
        "postCode": "1000",
        "country": "Bangladesh",
    }

    wf.finish()
    assert wf.state is WorkflowState.IDLE
    assert wf.booking is None


async def test_gateway_unavailable_then_retry_reuses_booking(ready_workflow, api):
    attempts = []

    def initiate(payload):
        attempts.append(payload["bookingId"])
        if len(attempts) == 1:
            raise ApiError("Service Unavailable", status=503)
        return {"gatewayUrl": GATEWAY_URL}

    api.routes["sslcommerz/initiate"] = initiate
    wf = ready_workflow
    await wf.submit_booking()
    navigate = AsyncMock()

    with pytest.raises(GatewayUnavailable):
        await wf.submit_payment(navigate)

    assert wf.state is WorkflowState.ERROR
    assert wf.last_error.kind == "gateway_unavailable"
    navigate.assert_not_awaited()

    wf.retry()
    assert wf.state is WorkflowState.PAYMENT
    await wf.submit_payment(navigate)

    assert wf.state is WorkflowState.SUCCESS
    assert attempts == ["abc123", "abc123"]
    assert len(api.calls_to("bookings")) == 1


async def test_expired_booking_restarts_booking_step(ready_workflow, api):
    api.routes["sslcommerz/initiate"] = ApiError("Booking not found", status=404)
    wf = ready_workflow
    await wf.submit_booking()

    with pytest.raises(BookingNotFound):
        await wf.submit_payment(AsyncMock())

    assert wf.state is WorkflowState.BOOKING
    assert wf.booking is None
    assert wf.can_continue

    api.routes["bookings"] = {"id": "def456"}
    await wf.submit_booking()
    assert wf.booking_id == "def456"
    assert len(api.calls_to("bookings")) == 2


async def test_payment_timeout_ends_in_error(make_workflow, api, tomorrow):
    async def never(payload):
        await asyncio.sleep(5)

    api.routes["sslcommerz/initiate"] = never
    wf = make_workflow(settings=WorkflowSettings(lookup_debounce_seconds=0, payment_timeout_seconds=0.05))
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))
    wf.set_pickup_time(tomorrow)
    await wf.submit_booking()

    with pytest.raises(PaymentTimeout):
        await wf.submit_payment(AsyncMock())

    assert wf.state is WorkflowState.ERROR
    assert wf.last_error.kind == "timeout"


async def test_failed_navigation_is_a_payment_error(ready_workflow):
    wf = ready_workflow
    await wf.submit_booking()
    navigate = AsyncMock(side_effect=RuntimeError("chat not found"))

    with pytest.raises(PaymentUnknown):
        await wf.submit_payment(navigate)
    assert wf.state is WorkflowState.ERROR


async def test_missing_contact_is_rejected_before_request(make_workflow, api, tomorrow):
    wf = make_workflow()
    await wf.open()
    await wf.select_area("pickup", wf.areas.get("1"))
    await wf.select_area("destination", wf.areas.get("2"))
    wf.set_pickup_time(tomorrow)
    await wf.submit_booking()
    wf.set_contact(phone="")

    with pytest.raises(ValidationError):
        await wf.submit_payment(AsyncMock())

    assert wf.state is WorkflowState.PAYMENT
    assert api.calls_to("sslcommerz/initiate") == []


async def test_processing_rejects_close_and_back(ready_workflow, api):
    release = asyncio.Event()

    async def slow_initiate(payload):
        await release.wait()
        return {"gatewayUrl": GATEWAY_URL}

    api.routes["sslcommerz/initiate"] = slow_initiate
    wf = ready_workflow
    await wf.submit_booking()

    task = asyncio.create_task(wf.submit_payment(AsyncMock()))
    await asyncio.sleep(0)
    assert wf.state is WorkflowState.PROCESSING

    with pytest.raises(InvalidTransition):
        wf.close(confirmed=True)
    with pytest.raises(InvalidTransition):
        wf.back()

    release.set()
    await task
    assert wf.state is WorkflowState.SUCCESS


async def test_clear_contact_only_in_payment(ready_workflow):
    wf = ready_workflow
    with pytest.raises(InvalidTransition):
        wf.clear_contact()

    await wf.submit_booking()
    wf.clear_contact()

    assert wf.contact == {"name": "", "email": "", "phone": ""}


# ============== closing ==============

async def test_close_with_typed_data_needs_confirmation(make_workflow):
    wf = make_workflow()
    await wf.open()
    await wf.search("pickup", "Gul")

    assert wf.needs_exit_confirmation
    assert wf.close() is False
    assert wf.state is WorkflowState.BOOKING

    assert wf.close(confirmed=True) is True
    assert wf.state is WorkflowState.IDLE
    assert wf.draft.is_empty
    assert wf.resolved("pickup") is None


async def test_close_empty_form_needs_no_confirmation(make_workflow):
    wf = make_workflow()
    await wf.open()
    assert wf.close() is True
    assert wf.state is WorkflowState.IDLE


async def test_close_from_error_state(ready_workflow, api):
    api.routes["sslcommerz/initiate"] = ApiError("gateway down", status=502)
    wf = ready_workflow
    await wf.submit_booking()
    with pytest.raises(GatewayUnavailable):
        await wf.submit_payment(AsyncMock())

    assert wf.close() is True
    assert wf.state is WorkflowState.IDLE


# ============== pickup time ==============

def test_parse_pickup_time_formats():
    now = datetime(2025, 3, 1, 9, 0)
    assert parse_pickup_time("2025-03-01 14:30", now) == datetime(2025, 3, 1, 14, 30)
    assert parse_pickup_time("02.03.2025 08:00", now) == datetime(2025, 3, 2, 8, 0)


@pytest.mark.parametrize("value", ["", "tomorrow", "2025-02-28 10:00"])
def test_parse_pickup_time_rejects(value):
    with pytest.raises(ValidationError):
        parse_pickup_time(value, datetime(2025, 3, 1, 9, 0))


def test_parse_pickup_time_mixed_awareness():
    naive_now = datetime(2025, 3, 1, 9, 0)
    aware_later = (naive_now + timedelta(days=1)).astimezone(timezone.utc)
    aware_earlier = (naive_now - timedelta(days=1)).astimezone(timezone.utc)

    assert parse_pickup_time(aware_later, naive_now) == aware_later
    with pytest.raises(ValidationError):
        parse_pickup_time(aware_earlier, naive_now)
    with pytest.raises(ValidationError):
        parse_pickup_time("2025-02-28 10:00", naive_now.astimezone(timezone.utc))


def test_parse_pickup_time_accepts_datetime():
    later = datetime.now() + timedelta(hours=2)
    assert parse_pickup_time(later) == later
