"""
booking_workflow.py - Truck booking workflow (trip -> fare -> booking -> payment handoff).

One BookingWorkflow is one workflow instance: it lives from open() until
close()/finish() and creates at most one booking on the backend.

States (see states.WorkflowState):
    IDLE -> BOOKING -> PAYMENT -> PROCESSING -> SUCCESS
                ^         ^            |
                |         +-- ERROR <--+
                +------ (booking expired)

All moves go through _transition() and the TRANSITIONS table, and every
public operation states which workflow states it may run in. While a payment
session request is outstanding (PROCESSING) every other operation, including
close, is rejected.

Fare and route quotes are tagged with the coordinate pair and a generation
counter; a response that arrives after the inputs changed is dropped.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

import exit_guard
from area_index import AreaIndex
from config import WorkflowSettings, get_workflow_settings
from errors import (
    AuthRequired,
    BookingCreationError,
    BookingNotFound,
    InvalidTransition,
    PaymentError,
    PaymentTimeout,
    PaymentUnknown,
    QuoteError,
    RouteError,
    ValidationError,
    WorkflowError,
)
from http_client import ApiClient, ApiError
from models import (
    DESTINATION,
    FIELDS,
    PICKUP,
    BookingDraft,
    BookingRecord,
    Coordinates,
    CustomerInfo,
    Driver,
    FareQuote,
    Outcome,
    PaymentSession,
    ResolvedArea,
    RouteDetails,
    UserSession,
)
from payment_gateway import PaymentGatewayAdapter, build_customer_info
from route_quote import RouteQuoteService
from states import TRANSITIONS, WorkflowState

logger = logging.getLogger(__name__)

PICKUP_TIME_FORMATS = ("%Y-%m-%d %H:%M", "%d.%m.%Y %H:%M", "%d/%m/%Y %H:%M", "%Y-%m-%dT%H:%M")

SessionProvider = Callable[[], Optional[UserSession]]
Navigator = Callable[[str], Awaitable[None]]


def parse_pickup_time(value, now: Optional[datetime] = None) -> datetime:
    """Accept a datetime or text such as '2025-03-01 14:30'; reject past times."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = (value or "").strip()
        if not text:
            raise ValidationError("Please enter a pickup time.")
        parsed = None
        for fmt in PICKUP_TIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                raise ValidationError("Pickup time format: YYYY-MM-DD HH:MM") from None

    reference = now or datetime.now(parsed.tzinfo)
    if (parsed.tzinfo is None) != (reference.tzinfo is None):
        # naive values are local time
        past = parsed.astimezone() < reference.astimezone()
    else:
        past = parsed < reference
    if past:
        raise ValidationError("Pickup time must be in the future.")
    return parsed


class BookingWorkflow:
    def __init__(
        self,
        *,
        api: ApiClient,
        driver: Driver,
        session_provider: SessionProvider,
        area_index: AreaIndex,
        quotes: RouteQuoteService,
        gateway: PaymentGatewayAdapter,
        settings: Optional[WorkflowSettings] = None,
        on_complete: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._api = api
        self.driver = driver
        self._session_provider = session_provider
        self.areas = area_index
        self._quotes = quotes
        self._gateway = gateway
        self.settings = settings or get_workflow_settings()
        self._on_complete = on_complete

        self.state = WorkflowState.IDLE
        self.draft = BookingDraft()
        self._resolved: dict[str, Optional[ResolvedArea]] = {field: None for field in FIELDS}
        self.fare_outcome: Optional[Outcome[FareQuote]] = None
        self.route_outcome: Optional[Outcome[RouteDetails]] = None
        self._quote_key = None
        self._quote_generation = 0

        self.booking: Optional[BookingRecord] = None
        self.contact = {"name": "", "email": "", "phone": ""}
        self.last_error: Optional[WorkflowError] = None
        self._submit_lock = asyncio.Lock()

    @classmethod
    def create(
        cls,
        api: ApiClient,
        driver: Driver,
        session_provider: SessionProvider,
        settings: Optional[WorkflowSettings] = None,
        on_complete: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> "BookingWorkflow":
        settings = settings or get_workflow_settings()
        return cls(
            api=api,
            driver=driver,
            session_provider=session_provider,
            area_index=AreaIndex(
                api,
                load_limit=settings.area_load_limit,
                query_limit=settings.area_query_limit,
                debounce_seconds=settings.lookup_debounce_seconds,
            ),
            quotes=RouteQuoteService(api),
            gateway=PaymentGatewayAdapter(api),
            settings=settings,
            on_complete=on_complete,
        )

    # =========================================================================
    # State machine plumbing
    # =========================================================================

    @property
    def booking_id(self) -> Optional[str]:
        return self.booking.id if self.booking else None

    def _log_extra(self) -> dict:
        return {"workflow_state": self.state.value, "booking_id": self.booking_id}

    def _transition(self, target: WorkflowState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(detail=f"{self.state.value} -> {target.value}")
        logger.info("Workflow %s -> %s", self.state.value, target.value, extra=self._log_extra())
        self.state = target

    def _require(self, *states: WorkflowState) -> None:
        if self.state not in states:
            if self.state is WorkflowState.PROCESSING:
                raise InvalidTransition("Payment is being processed, please wait.")
            raise InvalidTransition(detail=f"not allowed in {self.state.value}")

    def _reset(self) -> None:
        exit_guard.reset(self.draft)
        self._resolved = {field: None for field in FIELDS}
        self._invalidate_quotes()
        self.booking = None
        self.contact = {"name": "", "email": "", "phone": ""}
        self.last_error = None

    def _session(self) -> Optional[UserSession]:
        return self._session_provider()

    # =========================================================================
    # Booking step
    # =========================================================================

    async def open(self) -> None:
        """Start a fresh workflow instance and load the area catalog."""
        self._transition(WorkflowState.BOOKING)
        self._reset()
        session = self._session()
        if session is not None:
            self.contact = {"name": session.name, "email": session.email, "phone": session.phone}
        await self.areas.load()

    def resolved(self, field: str) -> Optional[ResolvedArea]:
        return self._resolved[field]

    def _text(self, field: str) -> str:
        return self.draft.source if field == PICKUP else self.draft.destination

    def _set_location(self, field: str, text: str, area: Optional[ResolvedArea]) -> None:
        coord = area.coordinates if area else None
        if field == PICKUP:
            self.draft.source = text
            self.draft.source_coord = coord
        else:
            self.draft.destination = text
            self.draft.dest_coord = coord
        self._resolved[field] = area

    @property
    def booking_in_progress(self) -> bool:
        return self._submit_lock.locked()

    def _ensure_trip_editable(self, field: str, text: str, area: Optional[ResolvedArea] = None) -> None:
        if self.booking_in_progress:
            raise InvalidTransition("Your booking is being created, please wait.")
        if self.booking is None:
            return
        current = self._resolved[field]
        if text != self._text(field) or (area is not None and area != current):
            raise ValidationError("This trip is already booked. Cancel the booking to change locations.")

    def set_text(self, field: str, text: str) -> None:
        """Free-text edit of a location. Any change drops that field's resolution."""
        self._require(WorkflowState.BOOKING)
        if field not in FIELDS:
            raise ValueError(f"unknown location field: {field!r}")
        text = (text or "").strip()
        if text == self._text(field):
            return
        self._ensure_trip_editable(field, text)
        self._set_location(field, text, None)
        self._invalidate_quotes()

    async def search(self, field: str, text: str) -> Optional[list[ResolvedArea]]:
        """Typing into a field: update the text, then a debounced lookup."""
        self.set_text(field, text)
        return await self.areas.lookup(text, field)

    async def select_area(self, field: str, area: ResolvedArea) -> None:
        """Picking a suggestion sets the text and the resolution in one step."""
        self._require(WorkflowState.BOOKING)
        if field not in FIELDS:
            raise ValueError(f"unknown location field: {field!r}")
        self._ensure_trip_editable(field, area.label, area)
        self._set_location(field, area.label, area)
        await self.refresh_quotes()

    def set_pickup_time(self, value, now: Optional[datetime] = None) -> datetime:
        self._require(WorkflowState.BOOKING)
        if self.booking_in_progress:
            raise InvalidTransition("Your booking is being created, please wait.")
        self.draft.pickup_time = parse_pickup_time(value, now)
        return self.draft.pickup_time

    # =========================================================================
    # Quotes
    # =========================================================================

    def _invalidate_quotes(self) -> None:
        self._quote_generation += 1
        self._quote_key = None
        self.fare_outcome = None
        self.route_outcome = None
        self.draft.clear_fare()

    async def refresh_quotes(self) -> None:
        """
        Re-quote fare and route for the current coordinate pair.

        Skipped when the pair and truck type are unchanged and a fare is held.
        Results for an outdated pair are discarded on arrival.
        """
        source = self.draft.source_coord
        destination = self.draft.dest_coord
        if source is None or destination is None:
            self._invalidate_quotes()
            return

        key = (source, destination, self.driver.truck_type)
        if key == self._quote_key and self.fare_outcome is not None and self.fare_outcome.ok:
            return

        self._invalidate_quotes()
        self._quote_key = key
        generation = self._quote_generation
        addresses = tuple(area.address if area else "" for area in (self._resolved[PICKUP], self._resolved[DESTINATION]))

        await asyncio.gather(
            self._fetch_fare(generation, source, destination, addresses),
            self._fetch_route(generation, source, destination),
        )

    async def _fetch_fare(
        self, generation: int, source: Coordinates, destination: Coordinates, addresses: tuple[str, str]
    ) -> None:
        try:
            quote = await self._quotes.quote_fare(
                source,
                destination,
                self.driver.truck_type,
                source_address=addresses[0],
                destination_address=addresses[1],
            )
            outcome = Outcome(value=quote)
        except QuoteError as e:
            if self.settings.fare_fallback_enabled:
                logger.warning(
                    "Fare quote failed, pricing at default %s", self.settings.default_fare,
                    extra=self._log_extra(),
                )
                quote = FareQuote(
                    total_fare=self.settings.default_fare,
                    distance=self.settings.default_distance_km,
                    is_fallback=True,
                )
                outcome = Outcome(value=quote)
            else:
                outcome = Outcome(error=e)

        if generation != self._quote_generation:
            logger.debug("Dropping stale fare quote (generation %s)", generation)
            return

        self.fare_outcome = outcome
        if outcome.ok:
            self.draft.fare = outcome.value.total_fare
            self.draft.distance = outcome.value.distance
        else:
            self.draft.clear_fare()

    async def _fetch_route(self, generation: int, source: Coordinates, destination: Coordinates) -> None:
        try:
            outcome = Outcome(value=await self._quotes.quote_route(source, destination))
        except RouteError as e:
            outcome = Outcome(error=e)

        if generation != self._quote_generation:
            logger.debug("Dropping stale route details (generation %s)", generation)
            return
        self.route_outcome = outcome

    @property
    def quote_error(self) -> Optional[WorkflowError]:
        if self.fare_outcome is not None and not self.fare_outcome.ok:
            return self.fare_outcome.error
        return None

    @property
    def can_continue(self) -> bool:
        """Whether "Continue to Payment" is enabled."""
        return (
            self.state is WorkflowState.BOOKING
            and all(self._resolved[field] is not None for field in FIELDS)
            and self.fare_outcome is not None
            and self.fare_outcome.ok
            and self.draft.fare > 0
        )

    def _booking_problem(self) -> Optional[str]:
        if not self.draft.source or not self.draft.destination or self.draft.pickup_time is None:
            return "Please fill in all required fields."
        if self._resolved[PICKUP] is None or self._resolved[DESTINATION] is None:
            return "Please pick the pickup and destination from the suggestions."
        if self.quote_error is not None:
            return self.quote_error.user_message
        if self.draft.fare <= 0:
            return "Please enter valid source and destination to calculate fare."
        return None

    # =========================================================================
    # Booking creation
    # =========================================================================

    async def submit_booking(self) -> BookingRecord:
        """
        Create the booking and move to PAYMENT.

        Local validation and the auth check happen before any HTTP call.
        Coming back from PAYMENT/ERROR reuses the existing booking.
        """
        self._require(WorkflowState.BOOKING)

        if self.booking is not None:
            self._transition(WorkflowState.PAYMENT)
            return self.booking

        problem = self._booking_problem()
        if problem:
            raise ValidationError(problem)
        if self._session() is None:
            raise AuthRequired()
        if self._submit_lock.locked():
            raise InvalidTransition("Your booking is already being created.")

        async with self._submit_lock:
            draft = self.draft
            payload = {
                "driverId": self.driver.id,
                "source": draft.source,
                "destination": draft.destination,
                "sourceLat": draft.source_coord.latitude,
                "sourceLng": draft.source_coord.longitude,
                "destLat": draft.dest_coord.latitude,
                "destLng": draft.dest_coord.longitude,
                "distance": draft.distance,
                "fare": draft.fare,
            }
            try:
                data = await self._api.post("bookings", payload, max_retries=1)
            except ApiError as e:
                logger.warning("Booking creation failed (status=%s): %s", e.status, e.message, extra=self._log_extra())
                raise BookingCreationError(detail=e.message) from e

            booking_id = data.get("id") if isinstance(data, dict) else None
            if not booking_id:
                raise BookingCreationError(detail="booking response has no id")

            self.booking = BookingRecord(id=str(booking_id), raw=data)
            self.last_error = None
            logger.info("Booking created", extra=self._log_extra())

            if self.state is not WorkflowState.BOOKING:
                # closed while the request was in flight
                logger.warning("Booking %s created after the workflow left BOOKING", booking_id)
                return self.booking

            self._transition(WorkflowState.PAYMENT)
            return self.booking

    # =========================================================================
    # Payment step
    # =========================================================================

    def set_contact(self, *, name: Optional[str] = None, email: Optional[str] = None, phone: Optional[str] = None) -> None:
        self._require(WorkflowState.PAYMENT)
        if name is not None:
            self.contact["name"] = name.strip()
        if email is not None:
            self.contact["email"] = email.strip()
        if phone is not None:
            self.contact["phone"] = phone.strip()

    def clear_contact(self) -> None:
        """Start contact entry over."""
        self._require(WorkflowState.PAYMENT)
        self.contact = {"name": "", "email": "", "phone": ""}

    def customer_info(self) -> CustomerInfo:
        return build_customer_info(
            name=self.contact["name"],
            email=self.contact["email"],
            phone=self.contact["phone"],
            draft=self.draft,
            destination_area=self._resolved[DESTINATION],
            default_post_code=self.settings.default_post_code,
            default_country=self.settings.default_country,
        )

    def _contact_problem(self) -> Optional[str]:
        missing = [key for key in ("name", "email", "phone") if not self.contact[key]]
        if missing:
            return "Please fill in all required payment information: " + ", ".join(missing)
        if "@" not in self.contact["email"]:
            return "Please enter a valid email address."
        return None

    async def submit_payment(self, navigate: Navigator) -> PaymentSession:
        """
        Start a gateway session and hand its URL to `navigate`.

        Ends in SUCCESS, ERROR or (booking expired) BOOKING; never in PROCESSING.
        """
        self._require(WorkflowState.PAYMENT)
        problem = self._contact_problem()
        if problem:
            raise ValidationError(problem)
        if self.booking is None:
            raise InvalidTransition(detail="payment without booking")

        info = self.customer_info()
        self._transition(WorkflowState.PROCESSING)

        try:
            session = await asyncio.wait_for(
                self._gateway.initiate(self.booking.id, info),
                timeout=self.settings.payment_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise self._fail_payment(PaymentTimeout()) from None
        except BookingNotFound as e:
            logger.warning("Booking vanished before payment, restarting booking step", extra=self._log_extra())
            self.booking = None
            self.last_error = e
            self._transition(WorkflowState.BOOKING)
            raise
        except PaymentError as e:
            raise self._fail_payment(e)
        except Exception as e:
            logger.exception("Unexpected payment initiation failure", extra=self._log_extra())
            raise self._fail_payment(PaymentUnknown(detail=str(e))) from e

        try:
            await navigate(session.gateway_url)
        except Exception as e:
            logger.exception("Gateway handoff failed", extra=self._log_extra())
            raise self._fail_payment(PaymentUnknown(detail=str(e))) from e

        self._transition(WorkflowState.SUCCESS)
        if self._on_complete is not None:
            await self._on_complete()
        return session

    def _fail_payment(self, error: PaymentError) -> PaymentError:
        self.last_error = error
        self._transition(WorkflowState.ERROR)
        return error

    # =========================================================================
    # Navigation between steps
    # =========================================================================

    def retry(self) -> None:
        """ERROR -> PAYMENT with the same booking."""
        self._require(WorkflowState.ERROR)
        self.last_error = None
        self._transition(WorkflowState.PAYMENT)

    def back(self) -> None:
        self._require(WorkflowState.PAYMENT, WorkflowState.ERROR)
        self._transition(WorkflowState.BOOKING)

    @property
    def needs_exit_confirmation(self) -> bool:
        return exit_guard.should_confirm(self.state, self.draft)

    def close(self, confirmed: bool = False) -> bool:
        """
        Leave the workflow. Returns False when confirmation is still needed.

        Raises InvalidTransition while a payment session is in flight.
        """
        if not exit_guard.can_close(self.state):
            raise InvalidTransition("Payment is being processed, please wait.")
        if self.state is WorkflowState.IDLE:
            return True
        if self.needs_exit_confirmation and not confirmed:
            return False
        self._transition(WorkflowState.IDLE)
        self._reset()
        return True

    def finish(self) -> None:
        """SUCCESS -> IDLE."""
        self._require(WorkflowState.SUCCESS)
        self._transition(WorkflowState.IDLE)
        self._reset()
