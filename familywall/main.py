"""FamilyWall application entry point.

Quick Start:
    $ familywall                 # Start the API server with background calendar sync
    $ familywall-cli calendars discover Graph

Environment:
    FAMILYWALL_ENV               # development/production (default: development)
    FAMILYWALL_LOG_LEVEL         # DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

import argparse
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from familywall import __version__
from familywall.api.routes import router, set_orchestrator
from familywall.config import get_settings
from familywall.database import close_db, init_db
from familywall.logging_config import get_logger, setup_logging
from familywall.orchestrator import Orchestrator

setup_logging()
logger = get_logger(__name__)

_orchestrator: Orchestrator | None = None
_shutdown_in_progress = False

GREEN = "\033[0;32m"
CYAN = "\033[0;36m"
DIM = "\033[2m"
BOLD = "\033[1m"
NC = "\033[0m"


async def _print_status(settings, orch: Orchestrator) -> None:
    """Print the system status after startup."""
    status = await orch.status()
    providers = ", ".join(
        f"{source} {'✔' if ok else '✘'}" for source, ok in status["providers"].items()
    ) or "none"
    calendars = await orch.registry.enabled_calendars()
    print(f"""
  {BOLD}{GREEN}FamilyWall v{__version__} is running{NC}

  {CYAN}▸{NC} Environment:  {BOLD}{settings.familywall_env}{NC}
  {CYAN}▸{NC} API:          {BOLD}http://{settings.api_host}:{settings.api_port}/api{NC}
  {CYAN}▸{NC} API docs:     {DIM}http://localhost:{settings.api_port}/docs{NC}
  {CYAN}▸{NC} Providers:    {providers}
  {CYAN}▸{NC} Calendars:    {len(calendars)} enabled
""")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    global _orchestrator, _shutdown_in_progress
    settings = get_settings()
    logger.info("familywall_starting", version=__version__, env=settings.familywall_env)

    await init_db()

    _orchestrator = Orchestrator(settings)
    set_orchestrator(_orchestrator)
    _shutdown_in_progress = False

    try:
        await _orchestrator.start()
    except Exception as exc:
        logger.critical("familywall_startup_failed", error=f"{type(exc).__name__}: {exc}")
        await close_db()
        raise

    await _print_status(settings, _orchestrator)
    logger.info("familywall_ready", version=__version__, sources=sorted(_orchestrator.strategies))

    yield

    await _graceful_shutdown()


async def _graceful_shutdown() -> None:
    """Stop background sync, then release the database."""
    global _shutdown_in_progress
    if _shutdown_in_progress:
        return
    _shutdown_in_progress = True
    logger.info("familywall_shutting_down")

    if _orchestrator:
        try:
            await _orchestrator.shutdown()
        except Exception as exc:
            logger.warning("orchestrator_shutdown_error", error=str(exc))

    try:
        await close_db()
    except Exception as exc:
        logger.warning("db_close_error", error=str(exc))

    print(f"  {GREEN}✔{NC} FamilyWall stopped.\n")
    logger.info("familywall_stopped")


app = FastAPI(
    title="FamilyWall",
    description="Calendar sync and local event cache for a family wall display",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


def main() -> None:
    """Server entry point."""
    parser = argparse.ArgumentParser(description="FamilyWall calendar sync server")
    parser.add_argument("--version", "-v", action="store_true", help="Show version information")
    parser.add_argument("--host", help="Bind address (default: API_HOST)")
    parser.add_argument("--port", type=int, help="Port (default: API_PORT)")
    args = parser.parse_args()

    if args.version:
        print(f"FamilyWall version {__version__}")
        return

    settings = get_settings()
    uvicorn.run(
        "familywall.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=settings.familywall_env == "development",
        log_level=settings.familywall_log_level.lower(),
    )


if __name__ == "__main__":
    main()
