"""
Session Guard.

Makes sure a fresh authenticated session wraps the whole completion commit.
Two of the three stores need an authenticated identity context, so the commit
never starts on a stale or missing session.

Flow:
1. ensure_fresh_session() before any store write (refresh at most once)
2. reverify() after the commit, without refreshing, to catch a session that
   was lost while the stores were being written
"""

import asyncio
import logging

from .errors import SessionExpiredError
from .stores import SessionProvider, SessionToken

logger = logging.getLogger(__name__)


class SessionGuard:
    """Fresh-session precondition for one commit."""

    def __init__(
        self,
        provider: SessionProvider,
        *,
        refresh_leeway_seconds: float = 60.0,
        call_timeout_seconds: float = 5.0,
    ):
        self.provider = provider
        self.refresh_leeway_seconds = refresh_leeway_seconds
        self.call_timeout_seconds = call_timeout_seconds

    async def _get_session(self) -> SessionToken | None:
        try:
            return await asyncio.wait_for(self.provider.get_session(), timeout=self.call_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Session lookup timed out")
            return None
        except SessionExpiredError:
            return None

    def _usable(self, session: SessionToken | None, user_id: str | None) -> bool:
        if session is None:
            return False
        if user_id is not None and session.user_id != user_id:
            logger.warning(f"Session belongs to another user (expected {user_id})")
            return False
        return not session.expires_within(self.refresh_leeway_seconds)

    async def ensure_fresh_session(self, user_id: str | None = None) -> SessionToken:
        """
        Return a session that will stay valid for the commit.

        Refreshes exactly once when the session is missing or close to
        expiry. Nothing has been written when this raises.

        Raises:
            SessionExpiredError: refresh failed or timed out, or the refreshed
                session belongs to another user.
        """
        session = await self._get_session()
        if self._usable(session, user_id):
            return session

        logger.info(f"Refreshing session before commit (user={user_id})")
        try:
            refreshed = await asyncio.wait_for(self.provider.refresh(), timeout=self.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise SessionExpiredError("Session refresh timed out") from e
        except SessionExpiredError:
            raise
        except Exception as e:
            logger.warning(f"Session refresh failed: {e}")
            raise SessionExpiredError(f"Session refresh failed: {e}") from e

        if refreshed is None:
            raise SessionExpiredError("Session refresh returned no session")
        if user_id is not None and refreshed.user_id != user_id:
            raise SessionExpiredError("Refreshed session belongs to another user")
        if refreshed.expires_within(0):
            raise SessionExpiredError("Refreshed session is already expired")
        return refreshed

    async def reverify(self, user_id: str) -> bool:
        """True if the session is still present and valid after the commit."""
        session = await self._get_session()
        if session is None or session.user_id != user_id:
            logger.warning(f"Session lost during onboarding commit for user {user_id}")
            return False
        if session.expires_within(0):
            logger.warning(f"Session expired during onboarding commit for user {user_id}")
            return False
        return True
