"""
Credential lifecycle and single-flight refresh.

Every authorized call goes through ``CredentialRefresher``:

- Proactive refresh when remaining validity drops below the threshold
- Reactive refresh on a 401, after which the request is retried once
- Concurrent callers that need a refresh share one in-flight refresh task
- A failed refresh invalidates the session and is never retried
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from ..events import Listeners, SubscriptionHandle
from ..exceptions import AuthExpiredError, RefreshFailedError, SyncClientError
from ..storage.namespaced import NamespacedStore
from ..transport.http import RequestFunction, Response
from .types import Credential, SessionProfile

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "credential"
PROFILE_KEY = "profile"
DEFAULT_REFRESH_THRESHOLD = 300.0


class RefreshTransport(Protocol):
    """Exchanges the current credential for a fresh one."""

    async def __call__(self, credential: Credential) -> Credential: ...


class HttpRefreshTransport:
    """Refreshes against ``POST /api/auth/refresh`` with ``{"refreshToken": ...}``."""

    def __init__(
        self,
        request: RequestFunction,
        url: str = "/api/auth/refresh",
        timeout: float = 30.0,
    ):
        self.request = request
        self.url = url
        self.timeout = timeout

    async def __call__(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise RefreshFailedError("No refresh token available")

        response = await self.request(
            "POST",
            self.url,
            {},
            {"refreshToken": credential.refresh_token},
            self.timeout,
        )
        if not response.ok or not isinstance(response.body, dict):
            raise RefreshFailedError(
                f"Refresh endpoint returned {response.status}", status=response.status
            )
        try:
            return Credential.from_token_response(response.body, credential.refresh_token)
        except (KeyError, TypeError, ValueError) as e:
            raise RefreshFailedError("Malformed refresh response", cause=e) from e


class CredentialRefresher:
    """Owns the session credential and attaches it to outgoing requests.

    Example:
        >>> refresher = CredentialRefresher(store, request, HttpRefreshTransport(request))
        >>> await refresher.load()
        >>> response = await refresher.authorized_request("GET", "/api/conversations")
    """

    def __init__(
        self,
        store: NamespacedStore,
        request: RequestFunction,
        refresh_transport: RefreshTransport,
        refresh_threshold: float = DEFAULT_REFRESH_THRESHOLD,
        request_timeout: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the refresher.

        Args:
            store: ``auth`` namespace for the credential and profile
            request: Request function used for authorized calls
            refresh_transport: Performs the actual refresh exchange
            refresh_threshold: Seconds of remaining validity that trigger a refresh
            request_timeout: Timeout passed to every request
            clock: Source of "now" (UTC)
        """
        self.store = store
        self.request = request
        self.refresh_transport = refresh_transport
        self.refresh_threshold = refresh_threshold
        self.request_timeout = request_timeout
        self.clock = clock or (lambda: datetime.now(UTC))

        self._credential: Credential | None = None
        self._profile: SessionProfile | None = None
        self._inflight: asyncio.Task[Credential] | None = None
        self._generation = 0
        self._invalidated: Listeners[RefreshFailedError] = Listeners("session_invalidated")
        self.refresh_count = 0

    # -- session -----------------------------------------------------------

    async def load(self) -> Credential | None:
        """Restore the credential and profile from storage."""
        data = await self.store.get_json(CREDENTIAL_KEY)
        if isinstance(data, dict):
            try:
                self._credential = Credential.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding unreadable stored credential: {e}")
                self._credential = None

        profile = await self.store.get_json(PROFILE_KEY)
        if isinstance(profile, dict):
            self._profile = SessionProfile.from_dict(profile)
        return self._credential

    async def login(
        self,
        credential: Credential,
        user: dict[str, Any] | None = None,
        user_type: str | None = None,
    ) -> None:
        """Start a session with a credential obtained from authentication."""
        self._generation += 1
        self._credential = credential
        self._profile = SessionProfile(user=user or {}, user_type=user_type)
        await self.store.set_json(CREDENTIAL_KEY, credential.to_dict())
        await self.store.set_json(PROFILE_KEY, self._profile.to_dict())
        logger.info(f"Session started, {credential!r}")

    async def logout(self) -> None:
        """End the session and clear stored credentials."""
        await self._clear_session()
        logger.info("Session ended")

    async def _clear_session(self) -> None:
        self._generation += 1
        self._credential = None
        self._profile = None
        await self.store.remove_many([CREDENTIAL_KEY, PROFILE_KEY])

    def snapshot(self) -> Credential | None:
        """Read-only view of the current credential."""
        return self._credential

    @property
    def profile(self) -> SessionProfile | None:
        return self._profile

    def is_authenticated(self) -> bool:
        return self._credential is not None

    def on_session_invalidated(
        self, callback: Callable[[RefreshFailedError], None]
    ) -> SubscriptionHandle:
        """Subscribe to the fatal signal that requires re-authentication."""
        return self._invalidated.add(callback)

    # -- refresh -----------------------------------------------------------

    async def get_valid_credential(self) -> Credential:
        """Return a credential with more than ``refresh_threshold`` seconds left.

        Raises:
            AuthExpiredError: No session is active
            RefreshFailedError: A needed refresh failed
        """
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        credential = self._credential
        if credential is None:
            raise AuthExpiredError("No active session", code="no_credential")

        if credential.needs_refresh(self.refresh_threshold, self.clock()):
            logger.info("Credential needs refresh (expires at %s)", credential.expiry.isoformat())
            return await self.refresh()
        return credential

    async def refresh(self) -> Credential:
        """Refresh the credential, joining an in-flight refresh if there is one.

        Raises:
            AuthExpiredError: No session is active
            RefreshFailedError: The refresh failed; the session is now invalidated
        """
        if self._inflight is None:
            credential = self._credential
            if credential is None:
                raise AuthExpiredError("No active session", code="no_credential")
            self._inflight = asyncio.create_task(self._run_refresh(credential, self._generation))
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self, credential: Credential, generation: int) -> Credential:
        self.refresh_count += 1
        try:
            fresh = await self.refresh_transport(credential)
        except RefreshFailedError as e:
            await self._invalidate(e, generation)
            raise
        except Exception as e:
            error = RefreshFailedError(
                f"Credential refresh failed: {e}",
                cause=e,
                status=getattr(e, "status", None),
            )
            await self._invalidate(error, generation)
            raise error from e
        finally:
            self._inflight = None

        if generation != self._generation:
            raise RefreshFailedError("Session changed while refreshing")

        self._credential = fresh
        await self.store.set_json(CREDENTIAL_KEY, fresh.to_dict())
        logger.info(f"Credential refreshed, {fresh!r}")
        return fresh

    async def _invalidate(self, error: RefreshFailedError, generation: int) -> None:
        if generation != self._generation:
            return
        logger.error(f"Credential refresh failed, invalidating session: {error}")
        await self._clear_session()
        self._invalidated.emit(error)

    # -- requests ----------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        body: Any,
        credential: Credential,
        headers: dict[str, str] | None,
    ) -> Response:
        merged = {**(headers or {}), "Authorization": f"Bearer {credential.access_token}"}
        return await self.request(method, url, merged, body, self.request_timeout)

    async def authorized_request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        """Send a request carrying a currently valid credential.

        A 401 triggers one refresh and one retry of the original request.
        Non-401 statuses are returned as-is for the caller to classify.

        Raises:
            AuthExpiredError: Still unauthorized after the refresh-and-retry
            RefreshFailedError: The refresh failed
            TransientNetworkError: The request itself could not be delivered
        """
        credential = await self.get_valid_credential()
        response = await self._send(method, url, body, credential, headers)
        if response.status != 401:
            return response

        current = self._credential
        if current is not None and current.access_token != credential.access_token:
            # Another caller refreshed while this request was in flight
            fresh = current
        else:
            fresh = await self.refresh()

        response = await self._send(method, url, body, fresh, headers)
        if response.status == 401:
            raise AuthExpiredError(
                "Credential rejected after refresh", {"url": url}, status=401
            )
        return response

    async def dispose(self) -> None:
        if self._inflight is not None:
            self._inflight.cancel()
            try:
                await self._inflight
            except (asyncio.CancelledError, SyncClientError):
                pass
            self._inflight = None
        self._invalidated.clear()
