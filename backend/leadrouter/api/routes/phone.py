"""Validación de teléfonos para formularios del panel."""

from fastapi import APIRouter, Depends, Query

from leadrouter.api.deps import get_settings
from leadrouter.core.config import Settings
from leadrouter.services import phone as phone_utils

router = APIRouter(prefix="/phone", tags=["phone"])


@router.get("/validate", summary="Valida y formatea un número")
def validate_phone(
    phone: str = Query(..., max_length=40),
    cfg: Settings = Depends(get_settings),
) -> dict[str, object]:
    """Nunca falla: devuelve `isValid`, tipo, forma canónica y advertencias."""
    return phone_utils.validate(phone, country_code=cfg.phone_country_code).as_dict()
