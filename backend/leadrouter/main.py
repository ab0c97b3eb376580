"""Punto de entrada principal para la aplicación FastAPI."""

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadrouter.api.routes.conversations import router as conversations_router
from leadrouter.api.routes.delivery import router as delivery_router
from leadrouter.api.routes.health import router as health_router
from leadrouter.api.routes.jobs import router as jobs_router
from leadrouter.api.routes.phone import router as phone_router
from leadrouter.channels.gateway.router import router as gateway_router
from leadrouter.channels.whatsapp.router import router as whatsapp_router
from leadrouter.core.config import settings
from leadrouter.core.logging import configure_logging, resolve_log_level
from leadrouter.core.middleware import RequestLoggingMiddleware


def create_app() -> FastAPI:
    """Crea y configura la instancia de FastAPI."""
    default_log_level = logging.DEBUG if settings.environment != "production" else logging.INFO
    log_level = resolve_log_level(settings.log_level, default=default_log_level)
    per_logger_files = None
    if settings.log_file_path:
        log_dir = Path(settings.log_file_path).parent
        per_logger_files = {
            "leadrouter.request": str(log_dir / "request.log"),
            "leadrouter.channels": str(log_dir / "webhooks.log"),
            "leadrouter.services.delivery_monitor": str(log_dir / "delivery.log"),
        }

    configure_logging(
        level=log_level,
        log_file=settings.log_file_path,
        per_logger_files=per_logger_files,
    )

    app = FastAPI(title="LeadRouter API", version="0.1.0", root_path="/api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Se ajustará por ambiente
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(whatsapp_router)
    app.include_router(gateway_router)
    app.include_router(jobs_router)
    app.include_router(conversations_router)
    app.include_router(delivery_router)
    app.include_router(phone_router)

    return app


app = create_app()
