"""Single-flight coordination of access-credential renewal.

When several in-flight calls hit a 401 at the same time, the first one
to report it becomes the renewer and starts the refresh call. Everyone
else awaits the same task (the *ticket*) and receives the same outcome:

* success: the store holds the new access credential, every waiter
  retries its own request once with it
* failure: the store is cleared, every waiter gets the same ``AuthExpired``

The ticket is dropped in a ``finally`` inside the renewal task itself,
so the gate is idle again by the time any waiter resumes, on both paths.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from quiz_client.core.credentials import CredentialStore
from quiz_client.core.errors import AuthExpired

logger = logging.getLogger(__name__)

Renewer = Callable[[str], Awaitable[str]]


class RenewalGate:
    def __init__(self, credentials: CredentialStore) -> None:
        self._store = credentials
        self._ticket: asyncio.Task[str] | None = None
        self.renewal_count = 0

    @property
    def busy(self) -> bool:
        return self._ticket is not None

    async def acquire_valid_credential(self) -> str | None:
        """Current access credential, waiting for an in-flight renewal first."""
        ticket = self._ticket
        if ticket is not None:
            return await asyncio.shield(ticket)
        return self._store.access_token

    async def report_unauthorized(self, stale_credential: str | None, renew: Renewer) -> str:
        """Called on a 401. Returns a credential to retry with, or raises ``AuthExpired``."""
        if self._ticket is None:
            current = self._store.access_token
            if current is not None and current != stale_credential:
                # Renewed (or re-logged in) after this request went out.
                return current
            refresh = self._store.refresh_token
            if refresh is None:
                self._store.clear_tokens()
                raise AuthExpired()
            self._ticket = asyncio.ensure_future(self._renew(refresh, renew))
        else:
            logger.debug("Renewal already in flight, joining it")
        return await asyncio.shield(self._ticket)

    async def _renew(self, refresh: str, renew: Renewer) -> str:
        self.renewal_count += 1
        logger.info("Renewing access credential")
        try:
            try:
                access = await renew(refresh)
            except Exception as e:
                if self._store.refresh_token == refresh:
                    self._store.clear_tokens()
                logger.warning("Credential renewal failed: %s", e)
                if isinstance(e, AuthExpired):
                    raise
                raise AuthExpired() from e

            if self._store.refresh_token != refresh:
                # Logout or a fresh login happened while the refresh call was out;
                # never let this older result overwrite that state.
                current = self._store.access_token
                if current is None:
                    raise AuthExpired()
                return current

            self._store.save_access_token(access)
            logger.info("Access credential renewed")
            return access
        finally:
            self._ticket = None
