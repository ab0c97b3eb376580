"""Fixtures compartidas para las pruebas.

Supabase, Whapi, Meta y Dify se sustituyen con `httpx.MockTransport`, de modo que
los repositorios y clientes reales corren completos contra dobles en memoria.
"""

from __future__ import annotations

import copy
import json
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
import jwt
import pytest
from httpx import ASGITransport, AsyncClient

from leadrouter.api import deps
from leadrouter.core.config import Settings
from leadrouter.main import create_app
from leadrouter.repositories.store import Datastore
from leadrouter.services.ai_engine import DifyClient
from leadrouter.services.dispatcher import Dispatcher
from leadrouter.services.transports import MetaTransport, WhapiTransport

JWT_SECRET = "test-jwt-secret"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce(value: Any) -> Any:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            pass
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        try:
            return float(value)
        except ValueError:
            return value
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    return value


def _matches(row: dict[str, Any], column: str, expression: str) -> bool:
    op, _, operand = expression.partition(".")
    current = row.get(column)
    if op == "eq":
        return _text(current) == operand
    if op == "neq":
        return _text(current) != operand
    if op == "is":
        return _text(current) == (None if operand == "null" else operand)
    if op == "in":
        options = operand.strip("()").split(",") if operand.strip("()") else []
        return _text(current) in options
    if current is None:
        return False
    left, right = _coerce(current), _coerce(operand)
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    raise AssertionError(f"Operador no soportado en el doble: {op}")


class FakeSupabase:
    """PostgREST en memoria con los filtros que usan los repositorios."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_with: int | None = None

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def seed(self, table: str, **values: Any) -> dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        row = {"id": str(uuid.uuid4()), "created_at": now, **values}
        if table in {"conversations", "delivery_logs"}:
            row.setdefault("updated_at", now)
        self.rows(table).append(row)
        return row

    def find(self, table: str, **values: Any) -> list[dict[str, Any]]:
        return [row for row in self.rows(table) if all(row.get(k) == v for k, v in values.items())]

    def get(self, table: str, row_id: str) -> dict[str, Any]:
        matches = self.find(table, id=row_id)
        assert matches, f"{table}:{row_id} inexistente"
        return matches[0]

    def _filtered(self, table: str, request: httpx.Request) -> list[dict[str, Any]]:
        rows = self.rows(table)
        for column, expression in request.url.params.multi_items():
            if column in {"select", "order", "limit"}:
                continue
            rows = [row for row in rows if _matches(row, column, expression)]
        return rows

    @staticmethod
    def _ordered(rows: list[dict[str, Any]], order: str | None) -> list[dict[str, Any]]:
        ordered = list(rows)
        for clause in reversed([part for part in (order or "").split(",") if part]):
            column, _, direction = clause.partition(".")
            ordered.sort(
                key=lambda row: (row.get(column) is None, _coerce(row.get(column)) if row.get(column) is not None else 0),
                reverse=direction.startswith("desc"),
            )
        return ordered

    def handler(self, request: httpx.Request) -> httpx.Response:
        table = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((request.method, table))
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"message": "forced failure"})

        if request.method == "GET":
            rows = self._ordered(self._filtered(table, request), request.url.params.get("order"))
            limit = request.url.params.get("limit")
            if limit:
                rows = rows[: int(limit)]
            return httpx.Response(200, json=copy.deepcopy(rows))

        if request.method == "POST":
            payload = json.loads(request.content)
            items = payload if isinstance(payload, list) else [payload]
            created = []
            for item in items:
                row = {"id": str(uuid.uuid4()), **copy.deepcopy(item)}
                row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
                self.rows(table).append(row)
                created.append(copy.deepcopy(row))
            return httpx.Response(201, json=created)

        if request.method == "PATCH":
            patch = json.loads(request.content)
            changed = []
            for row in self._filtered(table, request):
                row.update(copy.deepcopy(patch))
                changed.append(copy.deepcopy(row))
            return httpx.Response(200, json=changed)

        if request.method == "DELETE":
            doomed = self._filtered(table, request)
            ids = {id(row) for row in doomed}
            self.tables[table] = [row for row in self.rows(table) if id(row) not in ids]
            return httpx.Response(200, json=copy.deepcopy(doomed))

        return httpx.Response(405)


class FakeWhapi:
    """Gateway Whapi: registra envíos y responde estados configurables."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.failing_tokens: set[str] = set()
        self.statuses: dict[str, str] = {}
        self.status_error = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if request.method == "GET":
            if self.status_error:
                return httpx.Response(503, json={"error": "unavailable"})
            message_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": message_id, "status": self.statuses.get(message_id, "sent")})
        if token in self.failing_tokens:
            return httpx.Response(500, json={"error": "gateway down"})
        message_id = f"wa-{len(self.sent) + 1}"
        self.sent.append({"path": request.url.path, "token": token, "id": message_id, **json.loads(request.content)})
        return httpx.Response(200, json={"sent": True, "message": {"id": message_id}})


class FakeMeta:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(500, json={"error": {"message": "graph error"}})
        message_id = f"wamid.{len(self.sent) + 1}"
        self.sent.append({"id": message_id, **json.loads(request.content)})
        return httpx.Response(200, json={"messages": [{"id": message_id}]})


class FakeDify:
    """Chatflow de Dify: responde `answer` y cuenta las llamadas."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.answer = "Olá! Como posso ajudar?"
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "engine error"})
        return httpx.Response(
            200,
            json={
                "answer": self.answer,
                "conversation_id": payload.get("conversation_id") or "dify-conv-1",
                "message_id": f"dify-msg-{len(self.calls)}",
                "metadata": {"usage": {"total_tokens": 42}},
            },
        )


@pytest.fixture(name="settings")
def fixture_settings() -> Settings:
    return Settings(
        _env_file=None,
        supabase_url="http://supabase.test",
        supabase_service_role="service-role-key",
        supabase_jwt_secret=JWT_SECRET,
        dify_api_url="http://dify.test/v1",
        dify_api_key="dify-key",
        meta_access_token="meta-token",
        meta_phone_number_id="123456",
        meta_verify_token="verify-me",
        whapi_base_url="http://whapi.test",
        whapi_token="customer-token",
        relay_whapi_token="relay-token",
        cron_secret=None,
        debounce_seconds=60,
        debounce_policy="extend",
        idle_minutes=5,
        delivery_stale_minutes=15,
    )


@pytest.fixture(name="supabase")
def fixture_supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture(name="whapi")
def fixture_whapi() -> FakeWhapi:
    return FakeWhapi()


@pytest.fixture(name="meta")
def fixture_meta() -> FakeMeta:
    return FakeMeta()


@pytest.fixture(name="dify")
def fixture_dify() -> FakeDify:
    return FakeDify()


@pytest.fixture(name="store")
def fixture_store(settings: Settings, supabase: FakeSupabase) -> Datastore:
    return Datastore(settings=settings, transport=httpx.MockTransport(supabase.handler))


@pytest.fixture(name="dispatcher")
def fixture_dispatcher(
    store: Datastore, settings: Settings, whapi: FakeWhapi, meta: FakeMeta
) -> Dispatcher:
    return Dispatcher(
        store,
        settings=settings,
        meta=MetaTransport(settings=settings, transport=httpx.MockTransport(meta.handler)),
        whapi=WhapiTransport(settings=settings, transport=httpx.MockTransport(whapi.handler)),
    )


@pytest.fixture(name="engine")
def fixture_engine(settings: Settings, dify: FakeDify) -> DifyClient:
    return DifyClient(settings=settings, transport=httpx.MockTransport(dify.handler))


@pytest.fixture(name="app")
def fixture_app(settings: Settings, store: Datastore, dispatcher: Dispatcher, engine: DifyClient):
    application = create_app()
    application.dependency_overrides[deps.get_settings] = lambda: settings
    application.dependency_overrides[deps.get_store] = lambda: store
    application.dependency_overrides[deps.get_dispatcher] = lambda: dispatcher
    application.dependency_overrides[deps.get_engine] = lambda: engine
    return application


@pytest.fixture(name="async_client")
async def fixture_async_client(app) -> AsyncClient:
    """Retorna un cliente asíncrono contra la app principal utilizando ASGITransport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(name="auth_headers")
def fixture_auth_headers(supabase: FakeSupabase):
    """Construye `Authorization` para un usuario con los roles indicados."""

    def build(user_id: str = "operator-1", *roles: str) -> dict[str, str]:
        for role in roles:
            supabase.seed("user_roles", user_id=user_id, role=role)
        claims = {"sub": user_id, "role": "authenticated", "aud": "authenticated"}
        token = jwt.encode(claims, JWT_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture(name="seed_conversation")
def fixture_seed_conversation(supabase: FakeSupabase):
    def seed(**overrides: Any) -> dict[str, Any]:
        values = {
            "phone_number": "5551997519607",
            "channel": "gateway",
            "customer_name": "Maria",
            "status": "bot_attending",
            "fallback_mode": False,
            "fallback_taken_by": None,
            "assigned_seller_id": None,
            "assigned_operator_id": None,
            "metadata": {},
        }
        values.update(overrides)
        return supabase.seed("conversations", **values)

    return seed


@pytest.fixture(name="seed_seller")
def fixture_seed_seller(supabase: FakeSupabase):
    def seed(**overrides: Any) -> dict[str, Any]:
        values = {
            "name": "Carlos",
            "phone_number": "5551988887777",
            "active": True,
            "deleted": False,
            "current_workload": 0,
            "max_concurrent_leads": None,
            "conversion_rate": 0.0,
            "performance_score": 0.0,
            "specialties": [],
            "auto_first_message": False,
            "whapi_token": None,
        }
        values.update(overrides)
        return supabase.seed("sellers", **values)

    return seed
