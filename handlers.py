"""
General message handlers: /start, /help, /login, /logout and the fallback.

Booking conversation handlers live in booking_handlers.py.
"""
import logging
from contextlib import suppress

from aiogram import Router, F
from aiogram.types import Message
from aiogram.filters import Command, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.exceptions import TelegramBadRequest

from errors import InvalidTransition
from html_utils import h, safe_send
from keyboards import CANCEL_BUTTON, LOGIN_BUTTON, HELP_BUTTON, get_main_menu, get_cancel_keyboard
from session import LoginFailed, SessionStore
from states import LoginForm

logger = logging.getLogger(__name__)

# Create routers for handlers; the fallback router is included last
router = Router()
fallback_router = Router(name="fallback")

HELP_TEXT = (
    "🚚 <b>Truck booking bot</b>\n\n"
    "1. Log in with your account: /login\n"
    "2. Tap <b>🚚 Book a truck</b> and choose an available truck\n"
    "3. Enter pickup and destination, pick them from the suggestions\n"
    "4. Check the fare and continue to payment\n\n"
    "/logout ends your session. ❌ Cancel leaves the current booking."
)


def safe_get_user_id(message: Message) -> int | None:
    """Safely get user_id from message. Returns None if not available."""
    if message.from_user:
        return message.from_user.id
    return None


# ============== START / HELP ==============

@router.message(Command("start"))
async def cmd_start(message: Message, state: FSMContext, sessions: SessionStore):
    """Handle /start command - show main menu."""
    user_id = safe_get_user_id(message)
    if not user_id:
        return  # Can't proceed without user

    await state.clear()
    session = sessions.get(user_id)
    greeting = f"👋 Welcome back, <b>{h(session.name)}</b>!" if session else "👋 Welcome!"
    await safe_send(
        message,
        f"{greeting}\n\nBook a truck in a few steps. Use /help to see how.",
        reply_markup=get_main_menu(),
    )


@router.message(Command("help"))
@router.message(F.text == HELP_BUTTON)
async def help_command(message: Message):
    await safe_send(message, HELP_TEXT, reply_markup=get_main_menu())


# ============== LOGIN / LOGOUT ==============

@router.message(Command("login"))
@router.message(F.text == LOGIN_BUTTON)
async def start_login(message: Message, state: FSMContext, sessions: SessionStore):
    user_id = safe_get_user_id(message)
    if not user_id:
        return

    session = sessions.get(user_id)
    if session is not None:
        await safe_send(
            message,
            f"✅ You are logged in as <b>{h(session.email)}</b>. Use /logout to switch accounts.",
            reply_markup=get_main_menu(),
        )
        return

    await state.set_state(LoginForm.email)
    await safe_send(message, "📧 <b>Email:</b>", reply_markup=get_cancel_keyboard())


@router.message(LoginForm.email, F.text, F.text != CANCEL_BUTTON)
async def login_email(message: Message, state: FSMContext):
    email = (message.text or "").strip()
    if "@" not in email:
        await safe_send(message, "❌ Please enter a valid email address.")
        return
    await state.update_data(login_email=email)
    await state.set_state(LoginForm.password)
    await safe_send(message, "🔒 <b>Password:</b>")


@router.message(LoginForm.password, F.text, F.text != CANCEL_BUTTON)
async def login_password(message: Message, state: FSMContext, sessions: SessionStore):
    user_id = safe_get_user_id(message)
    password = message.text or ""
    data = await state.get_data()

    # the password should not stay in the chat history
    with suppress(TelegramBadRequest):
        await message.delete()

    try:
        session = await sessions.login(user_id, data.get("login_email", ""), password)
    except LoginFailed as e:
        await state.clear()
        await safe_send(message, f"❌ {h(str(e))}\nTry again with /login.", reply_markup=get_main_menu())
        return

    await state.clear()
    await safe_send(
        message,
        f"✅ Logged in as <b>{h(session.name or session.email)}</b>.",
        reply_markup=get_main_menu(),
    )


@router.message(Command("logout"))
async def logout(message: Message, state: FSMContext, sessions: SessionStore, workflows: dict):
    user_id = safe_get_user_id(message)
    if not user_id:
        return
    workflow = workflows.get(user_id)
    if workflow is not None:
        try:
            workflow.close(confirmed=True)
        except InvalidTransition as e:
            await safe_send(message, f"⏳ {h(e.user_message)}")
            return
    workflows.pop(user_id, None)
    sessions.clear(user_id)
    await state.clear()
    await safe_send(message, "👋 Logged out.", reply_markup=get_main_menu())


# ============== FALLBACK ==============

@fallback_router.message(StateFilter(None))
async def fallback_handler(message: Message):
    """Anything unmatched outside a conversation: show the menu again."""
    await safe_send(message, "Please use the menu buttons below.", reply_markup=get_main_menu())
