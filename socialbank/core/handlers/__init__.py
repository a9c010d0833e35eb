# socialbank/core/handlers/__init__.py
"""
Banking flow handlers.

Each module implements one or more dialogue states as ``StateHandler``
records and lists them in a module-level ``HANDLERS`` tuple. Modules are
imported lazily by ``socialbank.core.handlers.registry.register_handlers``.
"""
