"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web

from backend_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from backend_common.db.migrations import create_migration_runner
from backend_common.db.pool import create_pool_hooks
from backend_common.logging_config import configure_logging

from webhook_service.api.router import setup_routes
from webhook_service.otel import setup_otel, shutdown_otel
from webhook_service.settings import settings
from webhook_service.webhooks_dispatcher import start_webhook_dispatcher, stop_webhook_dispatcher
from webhook_service.workers import start_background_worker, stop_background_worker

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATION_PATHS = [
    PROJECT_ROOT / "migrations",
    Path("/app/migrations"),
]


def create_app() -> web.Application:
    app, cors = create_base_app(settings)
    setup_otel(app)

    add_healthcheck(app, settings)
    setup_routes(app)

    init_pool, close_pool = create_pool_hooks(settings)
    app.on_startup.append(init_pool)
    app.on_startup.append(create_migration_runner(settings, MIGRATION_PATHS))
    app.on_startup.append(start_webhook_dispatcher)
    app.on_startup.append(start_background_worker)

    app.on_cleanup.append(stop_background_worker)
    app.on_cleanup.append(stop_webhook_dispatcher)
    app.on_cleanup.append(close_pool)
    app.on_cleanup.append(shutdown_otel)

    add_cors_to_routes(app, cors)
    return app


def main() -> None:
    configure_logging()
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
