"""
indieauth.py — single-user IndieAuth login gate for Starlette/ASGI apps.

Only one identity URL ("me") is ever accepted. Visitors without a logged-in
session are sent to the authorization endpoint advertised by that URL, and
come back to the callback path with a ``code``/``state``/``me`` triple that
is verified server-to-server before the session is marked as logged in.

Flow:
  protected request, no session  → 307 to the authorization endpoint
                                   (state token → original path cached)
  GET /indieauth-redirect        → check me, consume state, POST the code
                                   back to the endpoint, set logged_in,
                                   307 to the original path

Sessions come from Starlette's SessionMiddleware, which must wrap
IndieAuthMiddleware. The state cache is the only state shared between
requests; it is a bounded LRU, so stale login attempts fall out on their own.
"""

import json
import logging
import secrets
import threading
import time
import urllib.parse
from collections import OrderedDict
from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any

import httpx

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from indieauth_discovery import (
    USER_AGENT,
    DiscoveryError,
    discover_authorization_endpoint,
)

logger = logging.getLogger("indieauth")
audit_logger = logging.getLogger("indieauth-audit")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CALLBACK_PATH = "/indieauth-redirect"
SESSION_COOKIE = "indieauth"
SESSION_KEY = "logged_in"
STATE_CACHE_SIZE = 64
STATE_TOKEN_BYTES = 12
VERIFY_TIMEOUT = 10.0  # seconds

# ---------------------------------------------------------------------------
# Audit logging
# ---------------------------------------------------------------------------

def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class IndieAuthError(Exception):
    """Base class for failures confined to a single callback request."""

    status_code = 500
    error = "server_error"


class IdentityMismatchError(IndieAuthError):
    """The asserted identity is not the configured one."""

    status_code = 403
    error = "invalid_me"


class InvalidStateError(IndieAuthError):
    """Unknown state token: forged, replayed, or evicted from the cache."""

    status_code = 400
    error = "invalid_state"


class ForbiddenError(IndieAuthError):
    """The authorization endpoint answered the code verification with 403."""

    status_code = 403
    error = "forbidden"


class VerificationError(IndieAuthError):
    """The code could not be verified (transport failure, bad status or body)."""

    status_code = 502
    error = "verification_failed"


# ---------------------------------------------------------------------------
# State cache
# ---------------------------------------------------------------------------

class StateCache:
    """Thread-safe LRU mapping of state tokens to the path that started the login.

    Eviction is purely capacity-driven: adding an entry beyond ``max_size``
    drops the least recently used token.
    """

    def __init__(self, max_size: int = STATE_CACHE_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, token: str, path: str) -> None:
        with self._lock:
            if token in self._entries:
                self._entries.move_to_end(token)
            self._entries[token] = path
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("state cache full, evicted %s...", evicted[:8])

    def get(self, token: str) -> str | None:
        """Return the path for ``token`` (marking it recently used), or None."""
        with self._lock:
            path = self._entries.get(token)
            if path is not None:
                self._entries.move_to_end(token)
            return path

    def pop(self, token: str) -> str | None:
        """Remove ``token`` and return its path, or None on a miss."""
        with self._lock:
            return self._entries.pop(token, None)

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class VerifyResponse:
    me: str
    state: str = ""
    scope: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _request_target(scope: Scope) -> str:
    """Path plus query string of the incoming request, always same-origin."""
    # "//host" or "/\\host" would be read by browsers as another origin.
    path = "/" + (scope.get("path") or "").lstrip("/\\")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def _set_query(url: str, params: dict[str, str]) -> str:
    """Merge ``params`` into the query of ``url``, replacing same-named keys."""
    parts = urllib.parse.urlsplit(url)
    query = [
        (k, v)
        for k, v in urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
        if k not in params
    ]
    query.extend(params.items())
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def _error_response(exc: IndieAuthError) -> JSONResponse:
    return JSONResponse(
        {"error": exc.error, "error_description": str(exc)},
        status_code=exc.status_code,
        headers={"cache-control": "no-store"},
    )


# ---------------------------------------------------------------------------
# IndieAuth
# ---------------------------------------------------------------------------

class IndieAuth:
    """Auth manager for a single trusted identity URL.

    The authorization endpoint is discovered when the manager is built;
    construction raises DiscoveryError if ``me`` advertises none.
    """

    def __init__(
        self,
        me: str,
        client_id: str,
        *,
        callback_path: str = CALLBACK_PATH,
        state_cache: StateCache | None = None,
        timeout: float = VERIFY_TIMEOUT,
        single_use_state: bool = True,
        verify_response_me: bool = True,
        discovery_client: httpx.Client | None = None,
        verify_client: httpx.AsyncClient | None = None,
    ):
        self.me = me
        self.client_id = client_id
        self.callback_path = callback_path
        self.redirect_uri = client_id.rstrip("/") + callback_path
        self.state_cache = state_cache if state_cache is not None else StateCache()
        self.timeout = timeout
        self.single_use_state = single_use_state
        self.verify_response_me = verify_response_me
        self._verify_client = verify_client

        try:
            self.authorization_endpoint = discover_authorization_endpoint(
                me, client=discovery_client, timeout=timeout,
            )
        except DiscoveryError as e:
            logger.error("authorization endpoint discovery failed for %s: %s", me, e)
            raise

    # --- Session gate ---

    @staticmethod
    def is_authenticated(session: MutableMapping[str, Any]) -> bool:
        return session.get(SESSION_KEY) is True

    def check(self, request: Request) -> bool:
        """True if the request carries a session with a valid login."""
        return self.is_authenticated(request.session)

    # --- Logout ---

    def logout(self, session: MutableMapping[str, Any]) -> None:
        session[SESSION_KEY] = False
        _audit("logout", me=self.me)

    # --- Authorization redirect ---

    def authorization_url(self, request_target: str) -> str:
        """Issue a state token for ``request_target`` and build the login URL."""
        state = secrets.token_hex(STATE_TOKEN_BYTES)
        self.state_cache.put(state, request_target)
        return _set_query(self.authorization_endpoint, {
            "me": self.me,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
        })

    def redirect(self, request: Request) -> RedirectResponse:
        target = _request_target(request.scope)
        location = self.authorization_url(target)
        _audit("login_redirect", path=target)
        return RedirectResponse(location, status_code=307)

    # --- Callback verification ---

    async def verify_code(self, code: str) -> VerifyResponse:
        """POST ``code`` back to the authorization endpoint.

        Raises:
            ForbiddenError: the endpoint answered 403.
            VerificationError: transport failure, any other non-200 status,
                or an undecodable body.
        """
        data = {
            "code": code,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
        }
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        try:
            if self._verify_client is not None:
                resp = await self._verify_client.post(
                    self.authorization_endpoint, data=data, headers=headers,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        self.authorization_endpoint, data=data, headers=headers,
                    )
        except httpx.HTTPError as e:
            raise VerificationError(f"authorization endpoint unreachable: {e}") from e

        if resp.status_code == 403:
            raise ForbiddenError("authorization endpoint answered with forbidden")
        if resp.status_code != 200:
            raise VerificationError(
                f"authorization endpoint answered with status {resp.status_code}"
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise VerificationError("authorization endpoint sent invalid JSON") from e
        if not isinstance(payload, dict):
            raise VerificationError("authorization endpoint sent an unexpected body")

        return VerifyResponse(
            me=str(payload.get("me") or ""),
            state=str(payload.get("state") or ""),
            scope=str(payload.get("scope") or ""),
        )

    async def verify_callback(self, me: str, code: str, state: str) -> str:
        """Validate a callback and return the path to send the visitor back to.

        The identity and state checks never touch the network.
        """
        if me != self.me:
            raise IdentityMismatchError(f"unexpected identity {me!r}")

        if self.single_use_state:
            # Consumed before verification: a failed code check needs a fresh login.
            path = self.state_cache.pop(state)
        else:
            path = self.state_cache.get(state)
        if path is None:
            raise InvalidStateError("unknown or expired state")

        verified = await self.verify_code(code)
        if self.verify_response_me and verified.me != self.me:
            raise IdentityMismatchError(
                f"authorization endpoint verified identity {verified.me!r}"
            )
        return path

    async def handle_callback(self, request: Request) -> Response:
        """Endpoint for the callback path. Errors never escape the request."""
        if request.method != "GET":
            return JSONResponse({"error": "method_not_allowed"}, status_code=405)

        params = request.query_params
        try:
            path = await self.verify_callback(
                params.get("me", ""), params.get("code", ""), params.get("state", ""),
            )
        except IndieAuthError as e:
            _audit("login_rejected", reason=e.error, detail=str(e))
            logger.warning("callback rejected (%s): %s", e.error, e)
            return _error_response(e)

        request.session[SESSION_KEY] = True
        _audit("login_succeeded", me=self.me, path=path)
        return RedirectResponse(path, status_code=307)


# ---------------------------------------------------------------------------
# IndieAuthMiddleware
# ---------------------------------------------------------------------------

class IndieAuthMiddleware:
    """ASGI middleware that only lets the configured identity through.

    The callback path is served here by the auth manager. Every other HTTP
    request needs a logged-in session; websockets without one are closed.
    """

    def __init__(self, app: ASGIApp, auth: IndieAuth):
        self.app = app
        self.auth = auth

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        if "session" not in scope:
            raise RuntimeError(
                "IndieAuthMiddleware needs SessionMiddleware installed around it"
            )

        if scope["type"] == "websocket":
            if self.auth.is_authenticated(scope["session"]):
                await self.app(scope, receive, send)
            else:
                await WebSocketClose(code=1008)(scope, receive, send)
            return

        request = Request(scope, receive)

        if scope.get("path") == self.auth.callback_path:
            response = await self.auth.handle_callback(request)
            await response(scope, receive, send)
            return

        if self.auth.check(request):
            await self.app(scope, receive, send)
            return

        response = self.auth.redirect(request)
        await response(scope, receive, send)
