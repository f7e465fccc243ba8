"""Notification poller - client-side loop over the server's poll endpoint.

One poller serves one authenticated session. It polls every 30 seconds,
backs off after repeated failures, re-polls on app foreground, and reacts to
a server-issued kick by alerting the user and logging out locally.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Callable, List, Dict, Any

import httpx

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30
MAX_CONSECUTIVE_FAILURES = 5
MAX_BACKOFF_SECONDS = 5 * 60
POLL_LIMIT = 20

KICK_NOTIFICATION_TYPE = "session_kicked"
DEFAULT_KICK_TITLE = "Session avslutad"
DEFAULT_KICK_BODY = "Din session har avslutats av en administratör."


def next_poll_delay(consecutive_failures: int) -> float:
    """Seconds to wait before the next poll.

    Normal interval below MAX_CONSECUTIVE_FAILURES, then twice the interval,
    doubling with each further failure up to MAX_BACKOFF_SECONDS.
    """
    if consecutive_failures < MAX_CONSECUTIVE_FAILURES:
        return POLL_INTERVAL_SECONDS
    exponent = consecutive_failures - MAX_CONSECUTIVE_FAILURES + 1
    return min(POLL_INTERVAL_SECONDS * (2 ** exponent), MAX_BACKOFF_SECONDS)


class PollerStatus(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


@dataclass
class PollerState:
    """Per-session poll state. Replaced wholesale on start and stop."""
    cursor: Optional[str] = None
    consecutive_failures: int = 0
    running: bool = False
    in_flight: bool = False
    status: PollerStatus = PollerStatus.IDLE


class PollError(Exception):
    """Transport failure or non-success response from the server."""


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _log_alert(title: str, body: str) -> None:
    logger.warning(f"ALERT: {title} - {body}")


class NotificationPoller:
    """Polls for notifications on behalf of one session."""

    def __init__(
        self,
        api_base_url: Optional[str],
        access_token: Optional[str],
        terminate_session: Callable[[], Any],
        alert: Optional[Callable[[str, str], Any]] = None,
        on_notifications: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = 30,
    ):
        self.api_base_url = api_base_url.rstrip("/") if api_base_url else None
        self.access_token = access_token
        self.terminate_session = terminate_session
        self.alert = alert or _log_alert
        self.on_notifications = on_notifications
        self.timeout = timeout
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.state = PollerState()
        self.unread_count = 0
        self.latest_notifications: List[Dict[str, Any]] = []

        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._generation = 0
        self._kick_handled = False

    @property
    def is_polling(self) -> bool:
        return self.state.running

    # ─── Lifecycle ──────────────────────────────────────────────────────

    def start(self, schedule: bool = True) -> bool:
        """Begin polling for a freshly authenticated session.

        Returns False (and stays idle) when the endpoint or credential is
        missing. With schedule=False no timer is run and the host drives
        poll() itself.
        """
        if not self.api_base_url or not self.access_token:
            logger.error("API base URL and access token must be configured to poll notifications")
            return False
        if self.state.running:
            return True

        self._generation += 1
        # Fresh state: no cursor, so the first poll fetches the whole unread backlog
        self.state = PollerState(running=True, status=PollerStatus.POLLING)
        self._kick_handled = False
        self._wake.clear()

        if schedule:
            self._task = asyncio.create_task(self._run())
        logger.info("Notification poller started")
        return True

    def stop(self) -> None:
        """Tear down: stop the timer and discard any response still in flight."""
        was_running = self.state.running
        self._generation += 1
        self.state = PollerState()
        self.unread_count = 0
        self.latest_notifications = []

        task, self._task = self._task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if was_running:
            logger.info("Notification poller stopped")

    def notify_foreground(self) -> None:
        """App came to the foreground: poll now instead of waiting for the timer."""
        if self.state.running:
            logger.debug("App resumed, polling now")
            self._wake.set()

    async def _run(self):
        """Scheduling loop: poll, then wait for the computed delay or a wake-up."""
        while self.state.running:
            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Notification poll loop error: {e}")

            if not self.state.running:
                break

            delay = next_poll_delay(self.state.consecutive_failures)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    # ─── Polling ────────────────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method, f"{self.api_base_url}{path}", headers=self._headers(), **kwargs
                )
        except httpx.HTTPError as e:
            raise PollError(f"Network error: {e}") from e

        if response.status_code >= 400:
            raise PollError(f"Server returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise PollError("Server returned invalid JSON") from e
        if not isinstance(body, dict) or not body.get("success") or not isinstance(body.get("data"), dict):
            raise PollError(f"Unsuccessful response: {body.get('error') if isinstance(body, dict) else body!r}")
        return body["data"]

    async def _fetch(self) -> Dict[str, Any]:
        params = {"unreadOnly": "true", "limit": POLL_LIMIT}
        if self.state.cursor:
            params["since"] = self.state.cursor

        data = await self._request("GET", "/notifications", params=params)
        if not isinstance(data.get("notifications", []), list):
            raise PollError("Malformed notifications list")
        return data

    def _record_failure(self, error: Exception) -> None:
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        # Only log the first few failures to avoid log spam
        if failures <= 3:
            logger.warning(f"Poll error ({failures}/{MAX_CONSECUTIVE_FAILURES}): {error}")
        elif failures == MAX_CONSECUTIVE_FAILURES:
            logger.warning("Too many consecutive poll failures, backing off")

    async def poll(self) -> bool:
        """Run one poll. Returns True if the server answered successfully.

        At most one poll is in flight; overlapping calls return False
        immediately. The cursor only moves on success.
        """
        if not self.state.running:
            return False
        if self.state.in_flight:
            logger.debug("Poll already in flight, skipping")
            return False

        generation = self._generation
        self.state.in_flight = True
        try:
            try:
                data = await self._fetch()
            except PollError as e:
                if generation == self._generation:
                    self._record_failure(e)
                return False

            if generation != self._generation or not self.state.running:
                logger.debug("Discarding poll response that arrived after teardown")
                return False

            # "now" rather than the newest server timestamp: a small overlap
            # is re-fetched instead of risking a gap from clock skew
            self.state.cursor = self._clock().isoformat()
            self.state.consecutive_failures = 0

            notifications = data.get("notifications") or []

            if data.get("hasKick"):
                await self._handle_kick(notifications)
                return True

            self.unread_count = int(data.get("unreadCount") or 0)
            if notifications:
                self.latest_notifications = notifications
                if self.on_notifications:
                    await _maybe_await(self.on_notifications(notifications))
            return True
        finally:
            if generation == self._generation:
                self.state.in_flight = False

    async def _handle_kick(self, notifications: List[Dict[str, Any]]) -> None:
        """Alert, mark the kick read, halt polling and log out. Runs once per start."""
        if self._kick_handled:
            return
        self._kick_handled = True

        kick = next(
            (n for n in notifications if n.get("notificationType") == KICK_NOTIFICATION_TYPE),
            None,
        )
        logger.warning("Session kicked by server, forcing logout")

        title = (kick or {}).get("title") or DEFAULT_KICK_TITLE
        body = (kick or {}).get("body") or DEFAULT_KICK_BODY
        await _maybe_await(self.alert(title, body))

        if kick and kick.get("id"):
            try:
                await self._request("POST", "/notifications", json={"notificationIds": [kick["id"]]})
            except PollError as e:
                logger.debug(f"Could not mark kick notification read: {e}")

        self.stop()
        await _maybe_await(self.terminate_session())

    async def refetch(self) -> bool:
        """Force an immediate poll (subject to the single-flight rule)."""
        return await self.poll()

    # ─── Mark as read ───────────────────────────────────────────────────

    async def mark_as_read(self, ids: List[str]) -> int:
        """Mark notifications read on the server and update local state.

        The unread counter drops by the number the server actually marked,
        which may be fewer than len(ids).
        """
        if not ids or not self.api_base_url:
            return 0

        generation = self._generation
        try:
            data = await self._request("POST", "/notifications", json={"notificationIds": ids})
        except PollError as e:
            logger.warning(f"Mark as read failed: {e}")
            return 0

        if generation != self._generation:
            return 0

        marked = data.get("markedAsRead")
        if marked is None:
            marked = len(ids)
        self.unread_count = max(0, self.unread_count - int(marked))
        removed = set(ids)
        self.latest_notifications = [n for n in self.latest_notifications if n.get("id") not in removed]
        return int(marked)
