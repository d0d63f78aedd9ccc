"""
Keyboard layouts for the bot.
"""
from aiogram.types import ReplyKeyboardMarkup, KeyboardButton, InlineKeyboardMarkup, InlineKeyboardButton

from driver_directory import Page
from models import PICKUP, ResolvedArea

BOOK_TRUCK_BUTTON = "🚚 Book a truck"
LOGIN_BUTTON = "🔑 Login"
HELP_BUTTON = "ℹ️ Help"
CANCEL_BUTTON = "❌ Cancel"

FIELD_CODES = {"p": "pickup", "d": "destination"}


def field_code(field: str) -> str:
    return "p" if field == PICKUP else "d"


def get_main_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=BOOK_TRUCK_BUTTON)],
            [KeyboardButton(text=LOGIN_BUTTON), KeyboardButton(text=HELP_BUTTON)],
        ],
        resize_keyboard=True,
    )


def get_cancel_keyboard() -> ReplyKeyboardMarkup:
    """Cancel button keyboard for FSM flows."""
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=CANCEL_BUTTON)]],
        resize_keyboard=True,
    )


def build_drivers_keyboard(page: Page) -> InlineKeyboardMarkup:
    buttons: list[list[InlineKeyboardButton]] = []
    for driver in page.data:
        truck = driver.truck_type.replace("_", " ").title()
        text = f"🚚 {driver.name} • {truck} • {driver.capacity:g}t"
        buttons.append([InlineKeyboardButton(text=text, callback_data=f"drv:{driver.id}")])

    nav: list[InlineKeyboardButton] = []
    if page.has_prev:
        nav.append(InlineKeyboardButton(text="⬅️", callback_data=f"drvpage:{page.page - 1}"))
    if page.has_next:
        nav.append(InlineKeyboardButton(text="➡️", callback_data=f"drvpage:{page.page + 1}"))
    if nav:
        buttons.append(nav)

    buttons.append([InlineKeyboardButton(text=CANCEL_BUTTON, callback_data="wf:close")])
    return InlineKeyboardMarkup(inline_keyboard=buttons)


def build_area_keyboard(field: str, areas: list[ResolvedArea], max_buttons: int = 10) -> InlineKeyboardMarkup:
    """Suggestions for one field; the button carries the area id."""
    code = field_code(field)
    buttons = [
        [InlineKeyboardButton(text=f"📍 {area.label} — {area.address}", callback_data=f"area:{code}:{area.id}")]
        for area in areas[:max_buttons]
    ]
    buttons.append([InlineKeyboardButton(text=CANCEL_BUTTON, callback_data="wf:close")])
    return InlineKeyboardMarkup(inline_keyboard=buttons)


def build_review_keyboard(can_continue: bool) -> InlineKeyboardMarkup:
    rows = []
    if can_continue:
        rows.append([InlineKeyboardButton(text="💳 Continue to Payment", callback_data="wf:book")])
    rows.append([
        InlineKeyboardButton(text="📍 Change pickup", callback_data="wf:edit:p"),
        InlineKeyboardButton(text="🏁 Change destination", callback_data="wf:edit:d"),
    ])
    rows.append([InlineKeyboardButton(text=CANCEL_BUTTON, callback_data="wf:close")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def build_payment_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✅ Proceed to Payment", callback_data="wf:pay")],
        [InlineKeyboardButton(text="✏️ Edit contact", callback_data="wf:contact")],
        [
            InlineKeyboardButton(text="⬅️ Back", callback_data="wf:back"),
            InlineKeyboardButton(text=CANCEL_BUTTON, callback_data="wf:close"),
        ],
    ])


def build_error_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="🔁 Try Again", callback_data="wf:retry"),
            InlineKeyboardButton(text=CANCEL_BUTTON, callback_data="wf:close"),
        ],
    ])


def build_exit_confirm_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="Yes, discard", callback_data="wf:close:yes"),
            InlineKeyboardButton(text="No, keep editing", callback_data="wf:close:no"),
        ],
    ])


def build_gateway_keyboard(url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💳 Pay securely", url=url)],
    ])
