"""Dependencias del webhook del gateway."""

import hmac

from fastapi import Depends, HTTPException, Query

from leadrouter.api.deps import get_settings
from leadrouter.core.config import Settings


async def verify_gateway_token(
    token: str | None = Query(default=None, description="Token compartido en la URL del webhook."),
    cfg: Settings = Depends(get_settings),
) -> None:
    """El gateway no firma sus llamadas; se compara un token en la URL cuando está configurado."""
    if not cfg.gateway_webhook_token:
        return
    if not token or not hmac.compare_digest(token, cfg.gateway_webhook_token):
        raise HTTPException(status_code=403, detail="forbidden")
