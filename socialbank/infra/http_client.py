# socialbank/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **sender**  – WhatsApp Cloud API calls (total=15 s, connect=5 s, pool limit=20)
- **banking** – core-banking / ESB calls  (total from settings, connect=5 s, pool limit=10)

Every outbound call is bounded by one of these timeouts; a timeout
surfaces to the caller as a failure.

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_sender_session() -> aiohttp.ClientSession:
    """Session for outbound WhatsApp Cloud API calls."""
    return _get_or_create(
        "sender",
        aiohttp.ClientTimeout(total=15, connect=5),
        limit=20,
    )


def get_banking_session(total_timeout: float = 15.0) -> aiohttp.ClientSession:
    """Session for core-banking (ESB) calls."""
    return _get_or_create(
        "banking",
        aiohttp.ClientTimeout(total=total_timeout, connect=5),
        limit=10,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
