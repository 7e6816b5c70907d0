"""
Countdown Controller - keeps a fresh redemption code on the consumer's screen.

The displayed code is replaced whenever its countdown reaches zero or the
user asks for a refresh. Each replacement is a real issuance and costs one
free redemption. Any failure ends the session: the controller goes terminal
and never retries on its own.

The countdown runs on the local clock from the moment the code arrived, so
device clock skew against the server does not shorten or stretch it.
"""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from structlog import get_logger

from app.exceptions import IssueRejectedError, RedemptionError
from app.models.api import IssueFailure, IssueTokenResponse

logger = get_logger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 0.25

# Terminal reason for failures that are not an issuance refusal
SERVICE_UNAVAILABLE = "service_unavailable"

IssueCallable = Callable[[], Awaitable[IssueTokenResponse]]
PeekCallable = Callable[[], Awaitable[int]]


class CountdownState(str, Enum):
    """Lifecycle of a countdown session."""

    IDLE = "idle"
    DISPLAYING = "displaying"
    TERMINAL = "terminal"
    CLOSED = "closed"


class CountdownController:
    """
    Drive the code/countdown display for one (offer, merchant) session.

    Usage:
        controller = CountdownController(
            lambda: client.issue_token(offer_id, merchant_id, device_tag="ios"),
            peek=client.peek_quota,
        )
        await controller.start()
        task = asyncio.create_task(controller.run())
        ...
        await controller.close()
    """

    def __init__(
        self,
        issue: IssueCallable,
        peek: PeekCallable | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._issue_fn = issue
        self._peek_fn = peek
        self.tick_interval = tick_interval
        self._clock = clock
        self.state = CountdownState.IDLE
        self.current: IssueTokenResponse | None = None
        self.terminal_reason: str | None = None
        self._deadline: float | None = None

    @property
    def token(self) -> str | None:
        """The code to render, None unless displaying."""
        if self.state != CountdownState.DISPLAYING or self.current is None:
            return None
        return self.current.token

    def seconds_left(self, now: float | None = None) -> int:
        """Whole seconds until the displayed code expires, never negative."""
        if self._deadline is None:
            return 0
        now = self._clock() if now is None else now
        return max(0, math.ceil(self._deadline - now))

    async def start(self) -> None:
        """
        Issue the first code.

        With a peek callable, the remaining free redemptions are read first and
        nothing is issued when none are left.
        """
        if self.state != CountdownState.IDLE:
            raise RuntimeError(f"cannot start countdown in state {self.state.value}")
        if self._peek_fn is not None and not await self._has_quota(self._peek_fn):
            return
        await self._issue()

    async def tick(self, now: float | None = None) -> bool:
        """
        Replace the code if its countdown has run out.

        Returns True when a re-issue was attempted.
        """
        if self.state != CountdownState.DISPLAYING:
            return False
        if self.seconds_left(now) > 0:
            return False
        await self._issue()
        return True

    async def refresh(self) -> None:
        """User-requested replacement of the displayed code."""
        if self.state != CountdownState.DISPLAYING:
            logger.debug("countdown_refresh_ignored", state=self.state.value)
            return
        await self._issue()

    async def run(self) -> None:
        """Tick until the session is closed or terminal."""
        if self.state == CountdownState.IDLE:
            await self.start()
        while self.state == CountdownState.DISPLAYING:
            await self.tick()
            await asyncio.sleep(self.tick_interval)

    async def close(self) -> None:
        """Stop the session and clear the displayed code."""
        self.state = CountdownState.CLOSED
        self.current = None
        self._deadline = None

    async def _has_quota(self, peek: PeekCallable) -> bool:
        try:
            remaining = await peek()
        except RedemptionError as e:
            logger.warning("countdown_quota_peek_failed", error=str(e))
            self._terminate(SERVICE_UNAVAILABLE)
            return False

        if remaining <= 0:
            self._terminate(IssueFailure.QUOTA_EXHAUSTED.value)
            return False
        return True

    async def _issue(self) -> None:
        try:
            issued = await self._issue_fn()
        except IssueRejectedError as e:
            self._terminate(e.reason.value)
            return
        except RedemptionError as e:
            logger.warning("countdown_issue_failed", error=str(e))
            self._terminate(SERVICE_UNAVAILABLE)
            return

        # Closed while the request was in flight
        if self.state == CountdownState.CLOSED:
            return

        self.current = issued
        self._deadline = self._clock() + issued.ttl_seconds
        self.state = CountdownState.DISPLAYING
        logger.debug(
            "countdown_code_displayed",
            token_id=issued.token_id[:8],
            ttl_seconds=issued.ttl_seconds,
            free_remaining=issued.free_remaining,
        )

    def _terminate(self, reason: str) -> None:
        if self.state == CountdownState.CLOSED:
            return
        self.state = CountdownState.TERMINAL
        self.terminal_reason = reason
        self.current = None
        self._deadline = None
        logger.info("countdown_terminal", reason=reason)
