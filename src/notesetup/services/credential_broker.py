"""Token-correlated password round-trip with the observing UI."""

import asyncio
import logging
import uuid
from typing import Dict, Optional

from notesetup.errors import CredentialChannelClosed, CredentialTimeout
from notesetup.models import CredentialRequest
from notesetup.services.stage_tracker import StageTracker

DEFAULT_CREDENTIAL_TIMEOUT = 120.0


class CredentialBroker:
    """Asks the UI for the elevation password without persisting it.

    Each request gets a fresh token and a single-shot future. The first
    response for a token resolves it; later, unknown or expired tokens are
    ignored.
    """

    def __init__(
        self,
        tracker: StageTracker,
        logger: Optional[logging.Logger] = None,
        default_timeout: float = DEFAULT_CREDENTIAL_TIMEOUT,
    ):
        self.tracker = tracker
        self.logger = logger or logging.getLogger(__name__)
        self.default_timeout = default_timeout
        self._pending: Dict[str, asyncio.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def pending_requests(self):
        return tuple(self._pending)

    async def request(self, timeout: Optional[float] = None) -> str:
        effective_timeout = self.default_timeout if timeout is None else timeout
        if self.tracker.closed:
            raise CredentialChannelClosed()

        loop = self._loop = asyncio.get_running_loop()
        request = CredentialRequest(request_id=uuid.uuid4().hex)
        waiter = loop.create_future()
        self._pending[request.request_id] = waiter
        remove_close_hook = self.tracker.on_close(
            lambda: loop.call_soon_threadsafe(self._fail_closed, request.request_id)
        )

        self.logger.info("Requesting administrator password (request %s).", request.request_id)
        self.tracker.notify({"type": "credential-request", "request_id": request.request_id})

        try:
            return await asyncio.wait_for(waiter, effective_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Password request %s timed out after %.0fs.", request.request_id, effective_timeout
            )
            raise CredentialTimeout(effective_timeout) from None
        finally:
            self._pending.pop(request.request_id, None)
            remove_close_hook()

    def respond(self, request_id: str, secret: str) -> bool:
        waiter = self._pending.pop(request_id, None)
        if waiter is None or waiter.done():
            self.logger.debug("Ignoring response for unknown or resolved request %s.", request_id)
            return False
        waiter.set_result(secret)
        self.logger.debug("Password received for request %s.", request_id)
        return True

    def respond_threadsafe(self, request_id: str, secret: str):
        if self._loop is None:
            self.logger.debug("Ignoring response for %s: no request was ever issued.", request_id)
            return
        self._loop.call_soon_threadsafe(self.respond, request_id, secret)

    def _fail_closed(self, request_id: str):
        waiter = self._pending.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_exception(CredentialChannelClosed())
