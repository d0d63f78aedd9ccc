"""
Global error handler for aiogram 3.x.

Catches exceptions that escape handlers, logs them with the user's workflow
context, and forwards a report to ADMINS with throttling.

- Recursion guard via contextvars
- Admin notification never re-raises
- Same error signature at most once per THROTTLE_SECONDS
- Traceback truncated to fit Telegram's message limit
"""
import contextvars
import hashlib
import logging
import time
import traceback
from typing import Any, Optional

from aiogram import Bot, Router
from aiogram.types import Update, ErrorEvent

from config import ADMINS
from html_utils import h

logger = logging.getLogger(__name__)

# Recursion guard: prevents handling the same error twice in nested calls
_error_handling_in_progress: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "_error_handling_in_progress", default=False
)

# Throttling: error_hash -> last_sent_timestamp
_error_cache: dict[str, float] = {}
THROTTLE_SECONDS = 30
MAX_TRACEBACK_LENGTH = 3500  # Safe margin under Telegram's 4096 limit


def _get_error_hash(exc: BaseException, tb_str: str) -> str:
    """
    Signature = exception type + message (first 100 chars) + innermost frame.
    """
    exc_type = type(exc).__name__
    exc_msg = str(exc)[:100]

    top_frame = ""
    for line in reversed(tb_str.strip().split("\n")):
        if 'File "' in line and ", line " in line:
            top_frame = line.strip()[:100]
            break

    sig = f"{exc_type}:{exc_msg}:{top_frame}"
    return hashlib.md5(sig.encode()).hexdigest()[:16]


def _should_send(error_hash: str, now: Optional[float] = None) -> bool:
    """Throttle check; records the send time when it passes."""
    now = time.time() if now is None else now
    last_sent = _error_cache.get(error_hash, 0)

    if now - last_sent < THROTTLE_SECONDS:
        return False

    _error_cache[error_hash] = now
    # keep the cache bounded
    if len(_error_cache) > 100:
        for k in sorted(_error_cache, key=_error_cache.get)[:50]:
            _error_cache.pop(k, None)

    return True


def _extract_user_info(update: Optional[Update]) -> dict[str, Any]:
    info = {"update_type": "N/A", "user_id": None, "username": None, "chat_id": None}
    if update is None:
        return info

    if update.message:
        info["update_type"] = "message"
        source, chat = update.message.from_user, update.message.chat
    elif update.callback_query:
        info["update_type"] = "callback_query"
        source = update.callback_query.from_user
        chat = update.callback_query.message.chat if update.callback_query.message else None
    elif update.edited_message:
        info["update_type"] = "edited_message"
        source, chat = update.edited_message.from_user, update.edited_message.chat
    else:
        return info

    if source:
        info["user_id"] = source.id
        info["username"] = source.username
    if chat:
        info["chat_id"] = chat.id
    return info


def _workflow_context(workflows: Optional[dict], user_id: Optional[int]) -> dict[str, Any]:
    """State and booking id of the user's open workflow, if any."""
    if not workflows or user_id is None:
        return {}
    workflow = workflows.get(user_id)
    if workflow is None:
        return {}
    return {"workflow_state": workflow.state.value, "booking_id": workflow.booking_id}


def _format_error_report(exc: BaseException, info: dict[str, Any], context: dict[str, Any], tb_str: str) -> str:
    """Admin notification text (HTML)."""
    if len(tb_str) > MAX_TRACEBACK_LENGTH:
        tb_str = tb_str[:MAX_TRACEBACK_LENGTH] + "\n... [truncated]"

    report = (
        f"⚠️ <b>BOT ERROR</b>\n\n"
        f"<b>Type:</b> {h(type(exc).__name__)}\n"
        f"<b>Message:</b> {h(str(exc)[:300])}\n\n"
        f"<b>Update:</b> {info['update_type']}\n"
        f"<b>User ID:</b> {info['user_id']}\n"
        f"<b>Username:</b> @{h(info['username'] or 'N/A')}\n"
        f"<b>Chat ID:</b> {info['chat_id']}\n"
    )
    if context:
        report += (
            f"<b>Workflow:</b> {h(context.get('workflow_state'))}\n"
            f"<b>Booking:</b> {h(context.get('booking_id') or 'N/A')}\n"
        )
    report += f"\n<b>Traceback:</b>\n<pre>{h(tb_str)}</pre>"

    if len(report) > 4000:
        report = report[:3900] + "\n... [message truncated]</pre>"
    return report


async def error_handler(event: ErrorEvent, bot: Bot, workflows: Optional[dict] = None) -> bool:
    """
    Returns True to mark the error handled (suppress further propagation).
    """
    if _error_handling_in_progress.get():
        logger.warning("Error handler recursion detected, skipping")
        return True

    token = _error_handling_in_progress.set(True)
    try:
        exc = event.exception
        tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        info = _extract_user_info(event.update)
        context = _workflow_context(workflows, info["user_id"])

        logger.error(
            "Error processing update: %s: %s", type(exc).__name__, exc,
            exc_info=exc,
            extra={"user_id": info["user_id"], "chat_id": info["chat_id"], **context},
        )

        if not ADMINS:
            return True

        error_hash = _get_error_hash(exc, tb_str)
        if not _should_send(error_hash):
            logger.info("Error report throttled (hash: %s)", error_hash)
            return True

        report = _format_error_report(exc, info, context, tb_str)
        for admin_id in ADMINS:
            try:
                await bot.send_message(chat_id=admin_id, text=report, parse_mode="HTML")
            except Exception as send_err:
                # reporting must never raise
                logger.warning("Failed to send error report to admin %s: %s", admin_id, send_err)

        return True
    finally:
        _error_handling_in_progress.reset(token)


def setup_error_handler(router: Router, bot: Bot) -> None:
    """
    Register the error handler on a router (usually the dispatcher).
    """
    @router.errors()
    async def _error_wrapper(event: ErrorEvent, workflows: Optional[dict] = None) -> bool:
        return await error_handler(event, bot, workflows)
