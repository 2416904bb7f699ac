"""authgate: asynchronous authentication and session-lifecycle core.

Sits between client code, the Supabase identity provider and the
Supabase profile table.  The public entry point is
``authgate.services.create_services`` which returns the wired graph,
including the caller-facing ``SessionContext``.
"""

__version__ = "0.1.0"
