# socialbank/core/handlers/registry.py
"""
Runtime-controlled flow registration.

Only flows listed in ``ENABLED_FLOWS`` (all of them when unset) are
imported and their state handlers added to the registry. Each flow
module exposes a ``HANDLERS`` tuple.

Usage at startup::

    from socialbank.core.handlers.registry import register_handlers
    handlers = HandlerRegistry()
    register_handlers(handlers)
"""
from __future__ import annotations

import importlib
import logging
from typing import Sequence

from socialbank.core.engine.state_handlers import HandlerRegistry

logger = logging.getLogger(__name__)

# Map of flow name -> module exposing HANDLERS.
# New flows only need an entry here + their handler module.
_KNOWN_FLOWS: dict[str, str] = {
    "authentication": "socialbank.core.handlers.authentication",
    "navigation": "socialbank.core.handlers.navigation",
    "registration": "socialbank.core.handlers.registration",
    "transfer": "socialbank.core.handlers.transfer",
    "bill_payment": "socialbank.core.handlers.bill_payment",
    "account_services": "socialbank.core.handlers.account_services",
}


def parse_enabled_flows() -> list[str]:
    """Parse ``ENABLED_FLOWS`` from settings; empty means every known flow."""
    from socialbank.config import settings
    raw = settings.enabled_flows.strip()
    if not raw:
        return list(_KNOWN_FLOWS)
    return [f.strip() for f in raw.split(",") if f.strip()]


def register_handlers(registry: HandlerRegistry, enabled: Sequence[str] | None = None) -> list[str]:
    """
    Import the requested flows and register their state handlers.

    Args:
        registry: Registry to populate.
        enabled: Flow names to register.
                 If *None*, falls back to ``parse_enabled_flows()``.

    Returns:
        List of flow names that were successfully registered.
    """
    if enabled is None:
        enabled = parse_enabled_flows()

    registered: list[str] = []

    for flow in enabled:
        module_path = _KNOWN_FLOWS.get(flow)
        if module_path is None:
            logger.error(
                "Unknown flow '%s' in ENABLED_FLOWS, skipping. Known flows: %s",
                flow, ", ".join(_KNOWN_FLOWS),
            )
            continue

        try:
            mod = importlib.import_module(module_path)
            for handler in mod.HANDLERS:
                registry.register(handler)
            registered.append(flow)
            logger.info("Registered flow: %s (%d states)", flow, len(mod.HANDLERS))
        except Exception:
            logger.error("Failed to register flow '%s'", flow, exc_info=True)

    if not registered:
        logger.warning("No flows registered! Check ENABLED_FLOWS setting.")

    return registered
