"""Configuración de logging estructurado para la aplicación."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from leadrouter.core.security import mask_phone, mask_secret

# Campos que nunca se escriben completos en los logs.
_PHONE_KEYS = {"phone", "phone_number", "phone_to", "phone_from", "to", "customer_phone"}
_SECRET_KEYS = {"token", "access_token", "api_key", "authorization", "whapi_token", "secret"}


def mask_sensitive(key: str, value: Any) -> Any:
    """Enmascara un valor cuando el nombre del campo indica datos sensibles."""
    if not isinstance(value, str):
        return value
    lowered = key.lower()
    if lowered in _PHONE_KEYS:
        return mask_phone(value)
    if lowered in _SECRET_KEYS or lowered.endswith("_token"):
        return mask_secret(value)
    if lowered == "email" and "@" in value:
        user, _, domain = value.partition("@")
        return f"{user[:2]}***@{domain}"
    return value


class JSONFormatter(logging.Formatter):
    """Formatter que serializa los registros como JSON."""

    _RESERVED = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in self._RESERVED:
                continue
            payload[key] = mask_sensitive(key, value)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    level: int = logging.INFO,
    *,
    log_file: str | None = None,
    per_logger_files: dict[str, str] | None = None,
) -> None:
    """Configura logging estructurado con formato JSON."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    targets: dict[str | None, str] = {}
    if log_file:
        targets[None] = log_file
    for logger_name, file_path in (per_logger_files or {}).items():
        targets[logger_name] = file_path

    for logger_name, file_path in targets.items():
        try:
            path = Path(file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            root_logger.exception(
                "logging.file_handler_failed", extra={"logger": logger_name, "file": file_path}
            )
            continue
        file_handler.setFormatter(JSONFormatter())
        logging.getLogger(logger_name).addHandler(file_handler)


def resolve_log_level(value: str | int | None, *, default: int = logging.INFO) -> int:
    """Convierte valores configurables a constantes numéricas de logging."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return default
        try:
            return int(candidate)
        except ValueError:
            mapped = logging.getLevelName(candidate.upper())
            if isinstance(mapped, int):
                return mapped
    return default


def get_logger(name: str) -> logging.Logger:
    """Retorna un logger hijo con el nombre solicitado."""
    return logging.getLogger(name)


def log_event(logger: logging.Logger, message: str, *, level: int = logging.INFO, **extra: Any) -> None:
    """Helper para enviar eventos con campos adicionales en formato JSON."""
    logger.log(level, message, extra=extra or None)
