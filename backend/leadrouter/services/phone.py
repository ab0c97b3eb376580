"""Normalización de teléfonos brasileños para almacenamiento y transportes."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

DEFAULT_COUNTRY_CODE = "55"
GATEWAY_CHAT_SUFFIX = "@s.whatsapp.net"
GROUP_CHAT_SUFFIX = "@g.us"

PhoneType = Literal["mobile", "landline", "unknown"]


class InvalidPhoneError(ValueError):
    """Número que no puede representarse en la forma canónica."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"Número inválido ({reason}): {raw}")
        self.raw = raw
        self.reason = reason


@dataclass(slots=True)
class PhoneValidation:
    is_valid: bool
    type: PhoneType
    formatted: str
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "isValid": self.is_valid,
            "type": self.type,
            "formatted": self.formatted,
            "warnings": list(self.warnings),
        }


def _clean(raw: str, country_code: str) -> tuple[str, bool]:
    """Deja sólo dígitos, quita ceros iniciales y el prefijo troncal tras el país.

    Retorna también si se agregó el código de país.
    """
    digits = re.sub(r"\D", "", raw or "").lstrip("0")
    # 10-11 dígitos es siempre DDD + número, aunque el DDD coincida con el país (ej. 55).
    if 10 <= len(digits) <= 11:
        return country_code + digits, True
    if digits.startswith(country_code):
        national = digits[len(country_code) :]
        if national.startswith("0"):
            digits = country_code + national.lstrip("0")
    return digits, False


def _area_code_valid(area: str) -> bool:
    return area.isdigit() and 11 <= int(area) <= 99


def normalize(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Forma canónica de almacenamiento: país + DDD + número (12 o 13 dígitos)."""
    if not raw or not re.search(r"\d", raw):
        raise InvalidPhoneError(raw, "empty")
    digits, _ = _clean(raw, country_code)
    if not digits.startswith(country_code) or not 12 <= len(digits) <= 13:
        raise InvalidPhoneError(raw, "invalid_length")
    area = digits[len(country_code) : len(country_code) + 2]
    if not _area_code_valid(area):
        raise InvalidPhoneError(raw, "invalid_area_code")
    return digits


def to_gateway(phone: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Direccionamiento legado de 8 dígitos que exige el gateway.

    Sólo se aplica al enviar por el gateway; nunca se persiste.
    """
    canonical = normalize(phone, country_code=country_code)
    prefix = canonical[: len(country_code) + 2]
    subscriber = canonical[len(country_code) + 2 :]
    if len(subscriber) == 9 and subscriber.startswith("9"):
        return prefix + subscriber[1:]
    return canonical


def to_gateway_chat_id(phone: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    return f"{to_gateway(phone, country_code=country_code)}{GATEWAY_CHAT_SUFFIX}"


def from_chat_id(chat_id: str) -> str:
    """Extrae el teléfono de un `chat_id` del gateway; los grupos no son clientes."""
    if chat_id.endswith(GROUP_CHAT_SUFFIX):
        raise InvalidPhoneError(chat_id, "group_chat")
    return chat_id.split("@", 1)[0]


def restore_mobile_digit(phone: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Inverso de `to_gateway` para móviles recibidos en formato de 8 dígitos."""
    canonical = normalize(phone, country_code=country_code)
    subscriber = canonical[len(country_code) + 2 :]
    if len(subscriber) == 8 and subscriber[0] in "6789":
        return canonical[: len(country_code) + 2] + "9" + subscriber
    return canonical


def _phone_type(subscriber: str) -> PhoneType:
    if len(subscriber) == 9 and subscriber.startswith("9"):
        return "mobile"
    if len(subscriber) == 8 and subscriber[0].isdigit():
        if int(subscriber[0]) >= 6:
            return "mobile"
        if subscriber[0] in "2345":
            return "landline"
    return "unknown"


def validate(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> PhoneValidation:
    """Reporte de validación para el usuario; nunca lanza excepciones."""
    if not raw or not re.search(r"\d", raw):
        return PhoneValidation(False, "unknown", "", ["Número vazio"])

    digits, added = _clean(raw, country_code)
    warnings: list[str] = []
    if added:
        warnings.append(f"Código do país ({country_code}) adicionado automaticamente")
    elif not digits.startswith(country_code):
        warnings.append("Número com formato suspeito")

    if not 12 <= len(digits) <= 13:
        warnings.append(f"Comprimento inválido: {len(digits)} dígitos")
        return PhoneValidation(False, "unknown", digits, warnings)

    area = digits[len(country_code) : len(country_code) + 2]
    if not _area_code_valid(area):
        warnings.append(f"DDD inválido: {area}")
        return PhoneValidation(False, "unknown", digits, warnings)

    if not digits.startswith(country_code):
        return PhoneValidation(False, "unknown", digits, warnings)

    subscriber = digits[len(country_code) + 2 :]
    return PhoneValidation(True, _phone_type(subscriber), digits, warnings)


def format_display(phone: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """`5551997519607` → `+55 (51) 99751-9607`; devuelve la entrada si no es válida."""
    try:
        canonical = normalize(phone, country_code=country_code)
    except InvalidPhoneError:
        return phone
    area = canonical[len(country_code) : len(country_code) + 2]
    subscriber = canonical[len(country_code) + 2 :]
    return f"+{country_code} ({area}) {subscriber[:-4]}-{subscriber[-4:]}"
