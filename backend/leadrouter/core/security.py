"""Helpers de validación común para webhooks, firmas y enmascarado."""

import hmac
import re
from hashlib import sha256


class SignatureError(Exception):
    """Excepción genérica para firmas inválidas."""


def verify_signature(
    secret: str, payload: bytes, signature: str | None, *, header_prefix: str = "sha256="
) -> None:
    """Verifica firmas HMAC-SHA256 como las de `X-Hub-Signature-256` de Meta.

    Args:
        secret: App secret compartido con el proveedor.
        payload: Cuerpo bruto recibido.
        signature: Valor del header recibido.
        header_prefix: Prefijo esperado (ej. "sha256=").
    """
    if not signature:
        raise SignatureError("Missing signature header")
    expected = f"{header_prefix}{build_signature(secret, payload)}"
    if not hmac.compare_digest(expected, signature):
        raise SignatureError("Invalid signature received")


def build_signature(secret: str, payload: bytes) -> str:
    digest = hmac.new(secret.encode(), payload, sha256)
    return digest.hexdigest()


def mask_secret(value: str | None) -> str | None:
    """Enmascara secretos para logging seguro."""
    if not value:
        return value
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def mask_phone(value: str | None) -> str | None:
    """Deja visibles sólo el prefijo y los últimos cuatro dígitos."""
    if not value:
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) <= 6:
        return "***"
    return f"{digits[:4]}****{digits[-4:]}"
