"""
In-memory user sessions keyed by Telegram user id.

The backend issues a JWT on login; the bot keeps it only in memory,
so a restart logs everybody out.
"""
import logging
from typing import Dict, Optional

from http_client import ApiClient, ApiError
from models import UserSession

logger = logging.getLogger(__name__)


class LoginFailed(Exception):
    pass


class SessionStore:
    def __init__(self, api: ApiClient):
        self._api = api
        self._sessions: Dict[int, UserSession] = {}

    def get(self, user_id: int) -> Optional[UserSession]:
        return self._sessions.get(user_id)

    def set(self, user_id: int, session: UserSession) -> None:
        self._sessions[user_id] = session

    def clear(self, user_id: int) -> None:
        if self._sessions.pop(user_id, None) is not None:
            logger.info("Session cleared", extra={"user_id": user_id})

    def token(self, user_id: int) -> Optional[str]:
        session = self.get(user_id)
        return session.token if session else None

    def client_for(self, user_id: int) -> ApiClient:
        """API client reading this user's current token; a 401 drops the session."""
        return self._api.with_token(
            lambda: self.token(user_id),
            on_unauthorized=lambda: self.clear(user_id),
        )

    async def login(self, user_id: int, email: str, password: str) -> UserSession:
        try:
            data = await self._api.post(
                "auth/login",
                {"email": email, "password": password},
                max_retries=1,
            )
        except ApiError as e:
            logger.info("Login failed: %s", e.message, extra={"user_id": user_id})
            raise LoginFailed("Invalid email or password.") from e

        if not isinstance(data, dict) or not data.get("token"):
            raise LoginFailed("Login response had no token.")

        user = data.get("user") or {}
        session = UserSession(
            id=str(user.get("id", "")),
            name=str(user.get("name") or ""),
            email=str(user.get("email") or email),
            phone=str(user.get("phone") or ""),
            token=str(data["token"]),
        )
        self.set(user_id, session)
        logger.info("User logged in", extra={"user_id": user_id, "backend_user_id": session.id})
        return session
