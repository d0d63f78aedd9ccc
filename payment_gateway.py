"""
payment_gateway.py - Hosted payment gateway handoff.

Creates a gateway session for an existing booking and hands back the
single-use redirect URL. The adapter never retries and never polls for the
payment result; the gateway reports back to the web app's return URLs.
"""

import logging
from typing import Optional

from errors import BookingNotFound, GatewayUnavailable, PaymentError, PaymentUnknown
from http_client import ApiClient, ApiError
from models import BookingDraft, CustomerInfo, PaymentSession, ResolvedArea

logger = logging.getLogger(__name__)

UNAVAILABLE_STATUSES = (429, 502, 503, 504)
URL_KEYS = ("gatewayUrl", "redirectUrl", "GatewayPageURL", "gatewayPageURL")


def classify_payment_error(error: ApiError) -> PaymentError | BookingNotFound:
    """Map a failed initiation call to the workflow's error kinds."""
    message = (error.message or "").lower()
    if error.status == 404 or "booking not found" in message:
        return BookingNotFound(detail=error.message)
    if error.is_network_error or error.status in UNAVAILABLE_STATUSES:
        return GatewayUnavailable(detail=error.message)
    return PaymentUnknown(detail=error.message)


def _gateway_url(data) -> Optional[str]:
    if isinstance(data, str):
        return data or None
    if not isinstance(data, dict):
        return None
    for key in URL_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _city_of(area: Optional[ResolvedArea], fallback: str) -> str:
    if area is not None and area.address:
        return area.address.split(",")[0].strip() or fallback
    return fallback


def build_customer_info(
    *,
    name: str,
    email: str,
    phone: str,
    draft: BookingDraft,
    destination_area: Optional[ResolvedArea] = None,
    default_post_code: str = "1000",
    default_country: str = "Bangladesh",
) -> CustomerInfo:
    """
    Contact fields come from the user; the address block is derived from the trip.
    """
    return CustomerInfo(
        name=name.strip(),
        email=email.strip(),
        phone=phone.strip(),
        address=draft.source.strip(),
        city=_city_of(destination_area, draft.destination.strip()),
        post_code=default_post_code,
        country=default_country,
    )


class PaymentGatewayAdapter:
    def __init__(self, api: ApiClient):
        self._api = api

    async def initiate(self, booking_id: str, customer_info: CustomerInfo) -> PaymentSession:
        """
        Raises:
            BookingNotFound: booking vanished or expired
            GatewayUnavailable: transient gateway/network failure
            PaymentUnknown: anything else
        """
        payload = {"bookingId": booking_id, "customerInfo": customer_info.to_api()}
        try:
            data = await self._api.post("sslcommerz/initiate", payload, max_retries=1)
        except ApiError as e:
            classified = classify_payment_error(e)
            logger.warning(
                "Payment initiation failed: %s (status=%s)",
                classified.kind,
                e.status,
                extra={"booking_id": booking_id},
            )
            raise classified from e

        url = _gateway_url(data)
        if not url:
            logger.warning("Payment session without gateway URL", extra={"booking_id": booking_id})
            raise GatewayUnavailable(detail="no gateway url in response")

        logger.info("Payment session created", extra={"booking_id": booking_id})
        return PaymentSession(booking_id=booking_id, customer_info=customer_info, gateway_url=url)
