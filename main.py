"""
authgate Entry Point.

Bootstraps the dependency graph via constructor injection, restores any
persisted session and reports who (if anyone) is signed in.  Every
subsystem is wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import atexit
import sys
import traceback
from pathlib import Path

from authgate.config import get_config
from authgate.database import create_database
from authgate.logger import StructuredLogger, get_logger
from authgate.services import create_services
from authgate.services.session_store import build_session_store


async def main() -> int:
    """Wire dependencies, restore the session and print its state."""
    logger: StructuredLogger = get_logger("authgate.main")
    logger.info("Starting authgate...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (Supabase client, optional local SQLite)
    # ------------------------------------------------------------------
    db = await create_database(config, StructuredLogger(name="authgate.database"))

    # DatabaseManager.close() is safe to call multiple times.
    atexit.register(db.close)

    if not db.is_online:
        logger.error("Supabase is not configured; nothing to do.")
        db.close()
        return 1

    # ------------------------------------------------------------------
    # 3. Service Container (single composition root)
    # ------------------------------------------------------------------
    services_logger = StructuredLogger(name="authgate.services")

    # Key derivation for the encrypted backend is CPU-bound; keep it off the loop.
    store = await asyncio.to_thread(
        build_session_store,
        config.SESSION_STORE_BACKEND,
        path=Path(config.SESSION_STORE_PATH),
        db=db,
        logger=services_logger,
        secure=config.secure_storage,
    )
    services = create_services(
        db=db,
        config=config,
        session_store=store,
        logger=services_logger,
    )
    context = services["session_context"]

    # ------------------------------------------------------------------
    # 4. Restore the persisted session
    # ------------------------------------------------------------------
    try:
        user = await context.initialize()
        if user is None:
            print("Not signed in.")
        else:
            print(
                f"Signed in as {user.email} "
                f"(role={user.role}, verification={user.verification_status})"
            )
    finally:
        context.close()
        db.close()
        logger.info("authgate shut down.")
    return 0


def _report_fatal_error(exc: BaseException) -> None:
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n{detail}")


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _report_fatal_error(exc)
        sys.exit(1)
