"""Autenticación de operadores (JWT de Supabase) y del scheduler (`X-Cron-Secret`)."""

from __future__ import annotations

import hmac
from typing import Any

import jwt
from fastapi import Depends, Header, HTTPException

from leadrouter.api.deps import get_settings, get_store
from leadrouter.core.config import Settings
from leadrouter.core.logging import get_logger
from leadrouter.repositories.base import RepositoryError
from leadrouter.repositories.store import Datastore
from leadrouter.services.authority import Actor

logger = get_logger(__name__)


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


def verify_jwt(token: str, secret: str, *, audience: str) -> dict[str, Any]:
    """Verifica HS256 con el secret de Supabase y devuelve los claims.

    Lanza `jwt.InvalidTokenError` si la firma, `exp`, `nbf` o `aud` no son válidos.
    """
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience,
        options={"require": ["sub", "aud"]},
    )


async def get_actor(
    authorization: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
    store: Datastore = Depends(get_store),
) -> Actor:
    """Operador autenticado con sus roles (`user_roles`)."""
    if not cfg.supabase_jwt_secret:
        raise HTTPException(status_code=500, detail="Falta SUPABASE_JWT_SECRET")
    token = parse_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="auth_required")
    try:
        claims = verify_jwt(token, cfg.supabase_jwt_secret, audience=cfg.supabase_jwt_audience)
    except jwt.InvalidTokenError as exc:
        logger.info("auth.token_rejected", extra={"error": str(exc)})
        raise HTTPException(status_code=401, detail="auth_required") from exc
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="auth_required")
    try:
        roles = await store.user_roles.roles_for(str(user_id))
    except RepositoryError as exc:
        raise HTTPException(status_code=502, detail="Error validando roles") from exc
    return Actor(user_id=str(user_id), roles=tuple(roles))


async def require_elevated(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_elevated:
        raise HTTPException(status_code=403, detail="forbidden")
    return actor


async def verify_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
) -> None:
    """Sin `cron_secret` configurado los jobs quedan abiertos (entornos locales)."""
    if not cfg.cron_secret:
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, cfg.cron_secret):
        raise HTTPException(status_code=401, detail="auth_required")
