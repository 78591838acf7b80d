#!/usr/bin/env python3
"""
IndieAuth gate — serve a Starlette app behind a single-user IndieAuth login.

Settings are loaded from indieauth.yaml (see indieauth.example.yaml) and can
be overridden with INDIEAUTH_* environment variables. The authorization
endpoint is discovered from the configured identity URL at startup; the
server refuses to start when discovery fails.
"""

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from indieauth import (
    CALLBACK_PATH,
    SESSION_COOKIE,
    STATE_CACHE_SIZE,
    VERIFY_TIMEOUT,
    IndieAuth,
    IndieAuthMiddleware,
    StateCache,
)
from indieauth_discovery import DiscoveryError

logger = logging.getLogger("indieauth-gate")

# ---------------------------------------------------------------------------
# Configuration — yaml file + env vars
# ---------------------------------------------------------------------------

SESSION_MAX_AGE = 14 * 86400  # 14 days

_ENV_OVERRIDES = {
    "me": "INDIEAUTH_ME",
    "client_id": "INDIEAUTH_CLIENT_ID",
    "secret_key": "INDIEAUTH_SECRET_KEY",
}


@dataclass
class GateConfig:
    me: str
    client_id: str
    secret_key: str
    callback_path: str = CALLBACK_PATH
    state_cache_size: int = STATE_CACHE_SIZE
    timeout: float = VERIFY_TIMEOUT
    session_max_age: int = SESSION_MAX_AGE
    https_only: bool = False


def _default_config_path() -> Path:
    env_path = os.environ.get("INDIEAUTH_CONFIG")
    if env_path:
        return Path(env_path)
    return Path(__file__).parent / "indieauth.yaml"


def load_config(config_path: Path | None = None) -> GateConfig:
    """Load gate settings from yaml, then apply environment overrides."""
    if config_path is None:
        config_path = _default_config_path()

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise SystemExit(f"Invalid config: expected a mapping in {config_path}")

    for key, env_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            raw[key] = value

    missing = [key for key in _ENV_OVERRIDES if not raw.get(key)]
    if missing:
        msg = f"Missing required setting(s) {', '.join(missing)} (config: {config_path})"
        example = Path(__file__).parent / "indieauth.example.yaml"
        if not config_path.exists() and example.exists():
            msg += f"\n  Copy the example:  cp {example} {config_path}"
        raise SystemExit(msg)

    unknown = set(raw) - set(GateConfig.__dataclass_fields__)
    if unknown:
        raise SystemExit(f"Unknown setting(s) in {config_path}: {', '.join(sorted(unknown))}")

    try:
        config = GateConfig(
            me=str(raw["me"]),
            client_id=str(raw["client_id"]),
            secret_key=str(raw["secret_key"]),
            callback_path=str(raw.get("callback_path", CALLBACK_PATH)),
            state_cache_size=int(raw.get("state_cache_size", STATE_CACHE_SIZE)),
            timeout=float(raw.get("timeout", VERIFY_TIMEOUT)),
            session_max_age=int(raw.get("session_max_age", SESSION_MAX_AGE)),
            https_only=bool(raw.get("https_only", False)),
        )
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Invalid setting in {config_path}: {e}")

    if not config.callback_path.startswith("/"):
        raise SystemExit(f"callback_path must start with '/': {config.callback_path!r}")
    if config.state_cache_size < 1:
        raise SystemExit("state_cache_size must be at least 1")

    return config


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(config: GateConfig, auth: IndieAuth | None = None) -> Starlette:
    """Build the protected app. Raises DiscoveryError if ``me`` has no endpoint."""
    if auth is None:
        auth = IndieAuth(
            config.me,
            config.client_id,
            callback_path=config.callback_path,
            state_cache=StateCache(config.state_cache_size),
            timeout=config.timeout,
        )

    async def index(request: Request) -> PlainTextResponse:
        return PlainTextResponse(f"Hello, {auth.me}")

    async def logout(request: Request) -> PlainTextResponse:
        auth.logout(request.session)
        return PlainTextResponse("logged out")

    # SessionMiddleware must sit outside the gate so the session is loaded first.
    return Starlette(
        routes=[
            Route("/", index),
            Route("/logout", logout),
        ],
        middleware=[
            Middleware(
                SessionMiddleware,
                secret_key=config.secret_key,
                session_cookie=SESSION_COOKIE,
                max_age=config.session_max_age,
                https_only=config.https_only,
            ),
            Middleware(IndieAuthMiddleware, auth=auth),
        ],
    )


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.indieauth/audit.log
    audit_log_path = Path.home() / ".indieauth" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("indieauth-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    _setup_logging()

    parser = argparse.ArgumentParser(description="IndieAuth gate")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    config = load_config(args.config)
    try:
        app = create_app(config)
    except DiscoveryError as e:
        logger.error("indieauth-gate: cannot start: %s", e)
        raise SystemExit(1)

    import uvicorn

    logger.info(f"indieauth-gate: protecting {config.me} on {args.host}:{args.port}")
    uvicorn_config = uvicorn.Config(
        app, host=args.host, port=args.port, log_level="info",
        proxy_headers=True, forwarded_allow_ips="*",
    )
    uvicorn.Server(uvicorn_config).run()


if __name__ == "__main__":
    main()
