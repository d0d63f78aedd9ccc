"""
HTML safety and formatting utilities for Telegram messages.

Prevents "can't parse entities" errors by:
1. Always escaping user-provided and backend-provided text
2. Falling back to plain text when HTML parsing fails
"""

import html
import logging
from typing import Any, Optional

from aiogram.types import Message
from aiogram.exceptions import TelegramBadRequest

from config import CURRENCY_SYMBOL

logger = logging.getLogger(__name__)


def escape_html(text: Any) -> str:
    """
    HTML-escape any value for safe Telegram HTML parsing.

    Args:
        text: Any value (will be converted to string)

    Returns:
        HTML-escaped string safe for parse_mode="HTML"
    """
    if text is None:
        return ""
    return html.escape(str(text), quote=False)


# Alias for convenience
h = escape_html


def format_fare(amount: float, symbol: str = CURRENCY_SYMBOL) -> str:
    """450 -> '৳450', 12500 -> '৳12,500'."""
    return f"{symbol}{amount:,.0f}"


def format_distance(km: float) -> str:
    return f"{km:.1f} km"


def format_duration(minutes: float) -> str:
    minutes = int(round(minutes))
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60} h {minutes % 60:02d} min"


async def safe_send(
    message: Message,
    text: str,
    parse_mode: Optional[str] = "HTML",
    **kwargs
) -> Message:
    """
    Send a message, retrying as plain text if Telegram rejects the HTML.
    """
    try:
        return await message.answer(text, parse_mode=parse_mode, **kwargs)
    except TelegramBadRequest as e:
        if "can't parse entities" in str(e).lower():
            logger.warning("HTML parse failed, falling back to plain text: %s", e)
            kwargs.pop("parse_mode", None)
            return await message.answer(text, parse_mode=None, **kwargs)
        raise


async def safe_edit(
    message: Message,
    text: str,
    parse_mode: Optional[str] = "HTML",
    **kwargs
) -> Message:
    """
    Edit a message in place with the same plain-text fallback.

    "message is not modified" is ignored; the user pressed a button twice.
    """
    try:
        return await message.edit_text(text, parse_mode=parse_mode, **kwargs)
    except TelegramBadRequest as e:
        error = str(e).lower()
        if "message is not modified" in error:
            return message
        if "can't parse entities" in error:
            logger.warning("HTML parse failed in edit, falling back to plain text: %s", e)
            kwargs.pop("parse_mode", None)
            return await message.edit_text(text, parse_mode=None, **kwargs)
        raise
