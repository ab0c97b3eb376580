"""Dependencias reutilizables para rutas de WhatsApp."""

from fastapi import Depends, Header, HTTPException, Request

from leadrouter.api.deps import get_settings
from leadrouter.core.config import Settings
from leadrouter.core.logging import get_logger
from leadrouter.core.security import SignatureError, verify_signature

logger = get_logger(__name__)


async def verify_meta_signature(
    request: Request,
    x_hub_signature_256: str | None = Header(default=None),
    cfg: Settings = Depends(get_settings),
) -> None:
    """Valida `X-Hub-Signature-256` sólo cuando hay `meta_app_secret` configurado."""
    if not cfg.meta_app_secret:
        return
    body = await request.body()
    try:
        verify_signature(cfg.meta_app_secret, body, x_hub_signature_256)
    except SignatureError as exc:
        logger.warning("whatsapp.signature_rejected", extra={"error": str(exc)})
        raise HTTPException(status_code=403, detail="forbidden") from exc
