"""Capa base de acceso a Supabase REST (PostgREST) vía httpx."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger

logger = get_logger(__name__)


class RepositoryError(RuntimeError):
    """Errores derivados de llamadas a Supabase."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(value: datetime) -> str:
    """Serializa timestamps en UTC con el formato que espera PostgREST."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def eq(value: Any) -> str:
    if isinstance(value, bool):
        return f"is.{str(value).lower()}"
    if value is None:
        return "is.null"
    return f"eq.{value}"


def in_(values: list[str] | tuple[str, ...]) -> str:
    return f"in.({','.join(values)})"


class SupabaseRepository:
    """Pequeña capa de acceso a Supabase REST para una tabla."""

    table: str = ""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token: str | None = None,
    ) -> None:
        cfg = settings or default_settings
        if not cfg.supabase_url:
            raise RepositoryError("Supabase URL no configurada")
        self._base_url = cfg.supabase_url.rstrip("/")
        self._service_role = cfg.supabase_service_role
        self._anon_key = cfg.supabase_anon
        self._transport = transport
        self._token = token

    async def _select(
        self,
        params: Mapping[str, str],
        *,
        order: str | None = None,
        limit: int | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        query = {"select": columns, **params}
        if order:
            query["order"] = order
        if limit:
            query["limit"] = str(limit)
        response = await self._request("GET", params=query)
        return self._json_list(response)

    async def _first(self, params: Mapping[str, str], *, order: str | None = None) -> dict[str, Any] | None:
        rows = await self._select(params, order=order, limit=1)
        return rows[0] if rows else None

    async def _insert(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", json=payload, prefer="return=representation")
        rows = self._json_list(response)
        if not rows:
            raise RepositoryError(f"Supabase no devolvió la fila insertada en {self.table}")
        return rows[0]

    async def _update(self, filters: Mapping[str, str], patch: dict[str, Any]) -> list[dict[str, Any]]:
        """PATCH condicionado por filtros; devuelve las filas que realmente cambiaron."""
        response = await self._request(
            "PATCH", params=dict(filters), json=patch, prefer="return=representation"
        )
        return self._json_list(response)

    async def _delete(self, filters: Mapping[str, str]) -> int:
        response = await self._request("DELETE", params=dict(filters), prefer="return=representation")
        return len(self._json_list(response))

    async def _request(
        self,
        method: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        path = f"/rest/v1/{self.table}"
        url = f"{self._base_url}{path}"
        headers = self._headers(prefer, has_body=json is not None)
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.request(
                    method,
                    url,
                    params=dict(params) if params else None,
                    json=json,
                    headers=headers,
                )
        except httpx.RequestError as exc:
            logger.exception("supabase.request_failed", extra={"path": path, "error": str(exc)})
            raise RepositoryError(f"Error al conectar a Supabase: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "supabase.response_error",
                extra={"path": path, "status": response.status_code, "body": response.text},
            )
            raise RepositoryError(f"Supabase respondió {response.status_code}: {response.text}")
        return response

    def _headers(self, prefer: str | None, *, has_body: bool) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if prefer:
            headers["Prefer"] = prefer
        if has_body:
            headers["Content-Type"] = "application/json"

        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
            if self._anon_key:
                headers["apikey"] = self._anon_key
        elif self._service_role:
            headers["Authorization"] = f"Bearer {self._service_role}"
            headers["apikey"] = self._service_role
        else:
            raise RepositoryError("Falta SUPABASE_SERVICE_ROLE para realizar la operación")
        return headers

    @staticmethod
    def _json_list(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        payload = response.json() or []
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            raise RepositoryError("Respuesta inesperada de Supabase")
        return [row for row in payload if isinstance(row, dict)]
