"""
booking_handlers.py

Truck booking conversation: driver -> pickup -> destination -> pickup time ->
fare review -> booking -> contact details -> payment gateway handoff.

Handlers only translate Telegram updates into BookingWorkflow calls and
render the result. Every handler looks the workflow up again and lets the
workflow check its own state, so a stale button can never trigger a step
the workflow is not in.
"""

import logging
from typing import Optional

from aiogram import Router, F
from aiogram.types import Message, CallbackQuery
from aiogram.fsm.context import FSMContext

from booking_workflow import BookingWorkflow
from driver_directory import DriverDirectory
from errors import BookingNotFound, InvalidTransition, PaymentError, WorkflowError
from html_utils import h, format_fare, format_distance, format_duration, safe_send, safe_edit
from keyboards import (
    BOOK_TRUCK_BUTTON, CANCEL_BUTTON, FIELD_CODES,
    get_main_menu, get_cancel_keyboard,
    build_drivers_keyboard, build_area_keyboard, build_review_keyboard,
    build_payment_keyboard, build_error_keyboard, build_exit_confirm_keyboard,
    build_gateway_keyboard,
)
from models import DESTINATION, PICKUP
from session import SessionStore
from states import TruckBooking, WorkflowState

logger = logging.getLogger(__name__)
booking_router = Router(name="booking")

FIELD_PROMPTS = {
    PICKUP: "📍 <b>Pickup location:</b>\nType an area name, e.g. <i>Gulshan</i>",
    DESTINATION: "🏁 <b>Destination:</b>\nType an area name, e.g. <i>Motijheel</i>",
}


# =============================================================================
# Rendering
# =============================================================================

def render_review(wf: BookingWorkflow) -> str:
    draft = wf.draft
    driver = wf.driver
    lines = [
        "📋 <b>Book Truck</b>",
        "",
        f"🚚 <b>Driver:</b> {h(driver.name)} ({h(driver.truck_type.replace('_', ' '))}, {driver.capacity:g} t)",
        f"📍 <b>Pickup:</b> {h(draft.source) or '—'}",
        f"🏁 <b>Destination:</b> {h(draft.destination) or '—'}",
        f"🕐 <b>Pickup time:</b> {draft.pickup_time.strftime('%Y-%m-%d %H:%M') if draft.pickup_time else '—'}",
        "",
    ]

    if wf.quote_error is not None:
        lines.append(f"⚠️ {h(wf.quote_error.user_message)}")
    elif draft.fare > 0:
        lines.append(f"💰 <b>Estimated Fare:</b> {format_fare(draft.fare)}")
        if draft.distance > 0:
            lines.append(f"📏 Distance: {format_distance(draft.distance)}")
        if wf.fare_outcome is not None and wf.fare_outcome.value.is_fallback:
            lines.append("<i>Estimated with the default rate; pricing service is unavailable.</i>")

    route = wf.route_outcome
    if route is not None:
        if route.ok:
            lines.append(f"🗺 Route: {format_distance(route.value.distance)}, ~{format_duration(route.value.duration)}")
        else:
            lines.append("🗺 <i>Route preview unavailable</i>")

    if wf.booking_id:
        lines.append("")
        lines.append(f"🆔 Booking: <code>{h(wf.booking_id)}</code>")

    return "\n".join(lines)


def render_payment(wf: BookingWorkflow) -> str:
    info = wf.customer_info()
    return "\n".join([
        "💳 <b>Payment Information</b>",
        "",
        "You will be redirected to the secure payment gateway.",
        "",
        f"👤 <b>Name:</b> {h(info.name)}",
        f"📧 <b>Email:</b> {h(info.email)}",
        f"📱 <b>Phone:</b> {h(info.phone)}",
        f"🏠 <b>Address:</b> {h(info.address)}",
        f"🏙 <b>City:</b> {h(info.city)}, {h(info.post_code)}, {h(info.country)}",
        "",
        f"💰 <b>Total Amount:</b> {format_fare(wf.draft.fare)}",
    ])


def render_error(wf: BookingWorkflow) -> str:
    message = wf.last_error.user_message if wf.last_error else "There was an error processing your payment."
    return f"❌ <b>Payment Failed</b>\n\n{h(message)}"


# =============================================================================
# Helpers
# =============================================================================

def _get_workflow(workflows: dict, user_id: int) -> Optional[BookingWorkflow]:
    return workflows.get(user_id)


async def _expired(target: Message, state: FSMContext) -> None:
    await state.clear()
    await safe_send(target, "⌛ This booking session has expired. Please start again.", reply_markup=get_main_menu())


async def _alert(callback: CallbackQuery, error: WorkflowError) -> None:
    await callback.answer(error.user_message, show_alert=True)


async def _show_review(target: Message, wf: BookingWorkflow, state: FSMContext, edit: bool = False) -> None:
    await state.set_state(TruckBooking.review)
    text = render_review(wf)
    keyboard = build_review_keyboard(wf.can_continue)
    if edit:
        await safe_edit(target, text, reply_markup=keyboard)
    else:
        await safe_send(target, text, reply_markup=keyboard)


async def _next_booking_step(target: Message, wf: BookingWorkflow, state: FSMContext) -> None:
    """Ask for whatever the trip still lacks, else show the review."""
    if wf.resolved(PICKUP) is None:
        await state.set_state(TruckBooking.pickup_location)
        await safe_send(target, FIELD_PROMPTS[PICKUP], reply_markup=get_cancel_keyboard())
    elif wf.resolved(DESTINATION) is None:
        await state.set_state(TruckBooking.destination)
        await safe_send(target, FIELD_PROMPTS[DESTINATION], reply_markup=get_cancel_keyboard())
    elif wf.draft.pickup_time is None:
        await state.set_state(TruckBooking.pickup_time)
        await safe_send(
            target,
            "🕐 <b>Pickup time:</b>\nFormat: <code>YYYY-MM-DD HH:MM</code>",
            reply_markup=get_cancel_keyboard(),
        )
    else:
        await _show_review(target, wf, state)


async def _next_payment_step(target: Message, wf: BookingWorkflow, state: FSMContext) -> None:
    """Collect missing contact fields, then show the payment summary."""
    for key, fsm_state, prompt in (
        ("name", TruckBooking.customer_name, "👤 <b>Full name:</b>"),
        ("email", TruckBooking.customer_email, "📧 <b>Email:</b>"),
        ("phone", TruckBooking.customer_phone, "📱 <b>Phone number:</b>"),
    ):
        if not wf.contact[key]:
            await state.set_state(fsm_state)
            await safe_send(target, prompt, reply_markup=get_cancel_keyboard())
            return

    await state.set_state(TruckBooking.payment_confirm)
    await safe_send(target, render_payment(wf), reply_markup=build_payment_keyboard())


async def _close(target: Message, wf: BookingWorkflow, workflows: dict, user_id: int,
                 state: FSMContext, confirmed: bool) -> bool:
    if not wf.close(confirmed=confirmed):
        await safe_send(
            target,
            "Are you sure you want to cancel this booking? All entered data will be lost.",
            reply_markup=build_exit_confirm_keyboard(),
        )
        return False
    workflows.pop(user_id, None)
    await state.clear()
    await safe_send(target, "❌ Booking cancelled.", reply_markup=get_main_menu())
    return True


# =============================================================================
# Entry: pick a driver
# =============================================================================

@booking_router.message(F.text == BOOK_TRUCK_BUTTON)
async def start_truck_booking(message: Message, state: FSMContext, sessions: SessionStore, workflows: dict):
    user_id = message.from_user.id if message.from_user else 0
    existing = _get_workflow(workflows, user_id)
    if existing is not None and existing.state is WorkflowState.PROCESSING:
        await safe_send(message, "⏳ Payment is being processed, please wait.")
        return

    workflows.pop(user_id, None)
    await state.clear()

    directory = DriverDirectory(sessions.client_for(user_id))
    page = await directory.list_available(page=1)
    if not page.data:
        await safe_send(
            message,
            "😔 No trucks are available right now. Please try again later.",
            reply_markup=get_main_menu(),
        )
        return

    await state.set_state(TruckBooking.selecting_driver)
    await state.update_data(driver_page=page.page)
    await safe_send(message, "🚚 <b>Choose a truck:</b>", reply_markup=build_drivers_keyboard(page))


@booking_router.callback_query(TruckBooking.selecting_driver, F.data.startswith("drvpage:"))
async def drivers_page(callback: CallbackQuery, state: FSMContext, sessions: SessionStore):
    await callback.answer()
    try:
        page_no = int((callback.data or "").split(":")[1])
    except (IndexError, ValueError):
        return

    directory = DriverDirectory(sessions.client_for(callback.from_user.id))
    page = await directory.list_available(page=page_no)
    await state.update_data(driver_page=page.page)
    await safe_edit(callback.message, "🚚 <b>Choose a truck:</b>", reply_markup=build_drivers_keyboard(page))


@booking_router.callback_query(TruckBooking.selecting_driver, F.data.startswith("drv:"))
async def driver_selected(callback: CallbackQuery, state: FSMContext, sessions: SessionStore, workflows: dict):
    await callback.answer()
    user_id = callback.from_user.id
    driver_id = (callback.data or "").split(":", 1)[1]

    api = sessions.client_for(user_id)
    directory = DriverDirectory(api)
    data = await state.get_data()
    page = await directory.list_available(page=data.get("driver_page", 1))
    driver = directory.get(driver_id)
    if driver is None:
        await safe_edit(callback.message, "❌ This truck is no longer available.", reply_markup=build_drivers_keyboard(page))
        return

    wf = BookingWorkflow.create(api, driver, session_provider=lambda: sessions.get(user_id))
    await wf.open()
    workflows[user_id] = wf
    logger.info("Booking workflow opened", extra={"user_id": user_id, "workflow_state": wf.state.value})

    await safe_edit(
        callback.message,
        f"✅ Truck selected: <b>{h(driver.name)}</b> ({h(driver.truck_type.replace('_', ' '))})",
        reply_markup=None,
    )
    if not wf.areas.areas:
        await safe_send(callback.message, "⚠️ Location suggestions are unavailable right now.")
    await _next_booking_step(callback.message, wf, state)


# =============================================================================
# Cancel / close (registered before the free-text handlers)
# =============================================================================

@booking_router.message(F.text == CANCEL_BUTTON)
async def cancel_button(message: Message, state: FSMContext, workflows: dict):
    user_id = message.from_user.id if message.from_user else 0
    wf = _get_workflow(workflows, user_id)
    if wf is None:
        await state.clear()
        await safe_send(message, "Main menu:", reply_markup=get_main_menu())
        return
    try:
        await _close(message, wf, workflows, user_id, state, confirmed=False)
    except InvalidTransition as e:
        await safe_send(message, f"⏳ {h(e.user_message)}")


@booking_router.callback_query(F.data.in_({"wf:close", "wf:close:yes", "wf:close:no"}))
async def close_pressed(callback: CallbackQuery, state: FSMContext, workflows: dict):
    user_id = callback.from_user.id
    wf = _get_workflow(workflows, user_id)
    if wf is None:
        await callback.answer()
        await state.clear()
        await safe_edit(callback.message, "❌ Booking cancelled.", reply_markup=None)
        return

    if callback.data == "wf:close:no":
        await callback.answer()
        await safe_edit(callback.message, "👍 Continuing your booking.", reply_markup=None)
        if wf.state is WorkflowState.BOOKING:
            await _next_booking_step(callback.message, wf, state)
        return

    try:
        closed = await _close(callback.message, wf, workflows, user_id, state,
                              confirmed=callback.data == "wf:close:yes")
    except InvalidTransition as e:
        await _alert(callback, e)
        return
    await callback.answer()
    if closed:
        await safe_edit(callback.message, "❌ Booking cancelled.", reply_markup=None)


# =============================================================================
# Booking step: locations and pickup time
# =============================================================================

async def _location_typed(message: Message, state: FSMContext, workflows: dict, field: str):
    wf = _get_workflow(workflows, message.from_user.id if message.from_user else 0)
    if wf is None:
        await _expired(message, state)
        return

    text = (message.text or "").strip()
    if len(text) < 2:
        await safe_send(message, "❌ Please type at least 2 letters.")
        return

    try:
        results = await wf.search(field, text)
    except WorkflowError as e:
        await safe_send(message, f"❌ {h(e.user_message)}")
        return

    if results is None:
        # a newer message for this field is being handled
        return
    if not results:
        await safe_send(message, "😔 No locations found. Try another name.")
        return

    await safe_send(
        message,
        f"Select the {'pickup' if field == PICKUP else 'destination'} location:",
        reply_markup=build_area_keyboard(field, results),
    )


@booking_router.message(TruckBooking.pickup_location, F.text)
async def pickup_typed(message: Message, state: FSMContext, workflows: dict):
    await _location_typed(message, state, workflows, PICKUP)


@booking_router.message(TruckBooking.destination, F.text)
async def destination_typed(message: Message, state: FSMContext, workflows: dict):
    await _location_typed(message, state, workflows, DESTINATION)


@booking_router.callback_query(F.data.startswith("area:"))
async def area_selected(callback: CallbackQuery, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, callback.from_user.id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return

    parts = (callback.data or "").split(":", 2)
    field = FIELD_CODES.get(parts[1]) if len(parts) == 3 else None
    area = wf.areas.get(parts[2]) if field else None
    if area is None:
        await callback.answer("This suggestion is no longer available.", show_alert=True)
        return

    try:
        await wf.select_area(field, area)
    except WorkflowError as e:
        await _alert(callback, e)
        return

    await callback.answer()
    await safe_edit(callback.message, f"✅ {h(area.label)} — {h(area.address)}", reply_markup=None)
    await _next_booking_step(callback.message, wf, state)


@booking_router.message(TruckBooking.pickup_time, F.text)
async def pickup_time_entered(message: Message, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, message.from_user.id if message.from_user else 0)
    if wf is None:
        await _expired(message, state)
        return
    try:
        wf.set_pickup_time(message.text)
    except WorkflowError as e:
        await safe_send(message, f"❌ {h(e.user_message)}")
        return
    await _next_booking_step(message, wf, state)


@booking_router.callback_query(F.data.startswith("wf:edit:"))
async def edit_location(callback: CallbackQuery, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, callback.from_user.id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return
    if wf.state is not WorkflowState.BOOKING:
        await callback.answer("Not available right now.", show_alert=True)
        return
    if wf.booking_in_progress:
        await callback.answer("Your booking is being created, please wait.", show_alert=True)
        return
    if wf.booking_id:
        await callback.answer("This trip is already booked. Cancel the booking to change locations.", show_alert=True)
        return

    await callback.answer()
    field = FIELD_CODES.get((callback.data or "").rsplit(":", 1)[-1], PICKUP)
    await state.set_state(TruckBooking.pickup_location if field == PICKUP else TruckBooking.destination)
    await safe_send(callback.message, FIELD_PROMPTS[field], reply_markup=get_cancel_keyboard())


# =============================================================================
# Booking creation
# =============================================================================

@booking_router.callback_query(F.data == "wf:book")
async def continue_to_payment(callback: CallbackQuery, state: FSMContext, workflows: dict):
    user_id = callback.from_user.id
    wf = _get_workflow(workflows, user_id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return

    try:
        await wf.submit_booking()
    except WorkflowError as e:
        logger.info("Booking not submitted: %s", e.kind, extra={"user_id": user_id})
        await _alert(callback, e)
        return

    await callback.answer()
    await safe_edit(callback.message, render_review(wf), reply_markup=None)
    await _next_payment_step(callback.message, wf, state)


# =============================================================================
# Payment step
# =============================================================================

async def _contact_entered(message: Message, state: FSMContext, workflows: dict, key: str):
    wf = _get_workflow(workflows, message.from_user.id if message.from_user else 0)
    if wf is None:
        await _expired(message, state)
        return
    value = (message.text or "").strip()
    if not value:
        await safe_send(message, "❌ This field is required.")
        return
    try:
        wf.set_contact(**{key: value})
    except WorkflowError as e:
        await safe_send(message, f"❌ {h(e.user_message)}")
        return
    await _next_payment_step(message, wf, state)


@booking_router.message(TruckBooking.customer_name, F.text)
async def customer_name_entered(message: Message, state: FSMContext, workflows: dict):
    await _contact_entered(message, state, workflows, "name")


@booking_router.message(TruckBooking.customer_email, F.text)
async def customer_email_entered(message: Message, state: FSMContext, workflows: dict):
    if "@" not in (message.text or ""):
        await safe_send(message, "❌ Please enter a valid email address.")
        return
    await _contact_entered(message, state, workflows, "email")


@booking_router.message(TruckBooking.customer_phone, F.text)
async def customer_phone_entered(message: Message, state: FSMContext, workflows: dict):
    await _contact_entered(message, state, workflows, "phone")


@booking_router.callback_query(F.data == "wf:contact")
async def edit_contact(callback: CallbackQuery, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, callback.from_user.id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return
    try:
        wf.clear_contact()
    except WorkflowError as e:
        await _alert(callback, e)
        return
    await callback.answer()
    await _next_payment_step(callback.message, wf, state)


@booking_router.callback_query(F.data == "wf:pay")
async def proceed_to_payment(callback: CallbackQuery, state: FSMContext, workflows: dict):
    user_id = callback.from_user.id
    wf = _get_workflow(workflows, user_id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return
    if wf.state is not WorkflowState.PAYMENT:
        await callback.answer("Not available right now.", show_alert=True)
        return

    await callback.answer()
    await state.set_state(TruckBooking.processing)
    await safe_edit(
        callback.message,
        "⏳ <b>Processing Payment</b>\n\nPlease wait while we open the payment gateway...",
        reply_markup=None,
    )

    async def navigate(url: str) -> None:
        await safe_send(
            callback.message,
            "🔐 Your payment page is ready. Tap the button below to pay.",
            reply_markup=build_gateway_keyboard(url),
        )

    try:
        await wf.submit_payment(navigate)
    except BookingNotFound as e:
        await safe_send(callback.message, f"⚠️ {h(e.user_message)}")
        await _show_review(callback.message, wf, state)
        return
    except PaymentError:
        await state.set_state(TruckBooking.error)
        await safe_send(callback.message, render_error(wf), reply_markup=build_error_keyboard())
        return
    except WorkflowError as e:
        await state.set_state(TruckBooking.payment_confirm)
        await safe_send(callback.message, f"❌ {h(e.user_message)}", reply_markup=build_payment_keyboard())
        return

    wf.finish()
    workflows.pop(user_id, None)
    await state.clear()
    await safe_send(
        callback.message,
        "✅ <b>Booking created!</b>\n\nComplete the payment on the gateway page. "
        "You will get a confirmation once the payment is processed.",
        reply_markup=get_main_menu(),
    )


@booking_router.message(TruckBooking.processing)
async def busy_processing(message: Message):
    await safe_send(message, "⏳ Payment is being processed, please wait.")


@booking_router.callback_query(F.data == "wf:retry")
async def retry_payment(callback: CallbackQuery, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, callback.from_user.id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return
    failure_text = render_error(wf)
    try:
        wf.retry()
    except WorkflowError as e:
        await _alert(callback, e)
        return
    await callback.answer()
    await safe_edit(callback.message, failure_text + "\n\n🔁 Retrying...", reply_markup=None)
    await _next_payment_step(callback.message, wf, state)


@booking_router.callback_query(F.data == "wf:back")
async def back_to_booking(callback: CallbackQuery, state: FSMContext, workflows: dict):
    wf = _get_workflow(workflows, callback.from_user.id)
    if wf is None:
        await callback.answer()
        await _expired(callback.message, state)
        return
    try:
        wf.back()
    except WorkflowError as e:
        await _alert(callback, e)
        return
    await callback.answer()
    await _show_review(callback.message, wf, state, edit=True)
