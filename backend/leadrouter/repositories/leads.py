"""Repositorios de leads y vendedores vía Supabase REST."""

from __future__ import annotations

from typing import Any

from leadrouter.models.lead import Lead, Seller
from leadrouter.repositories.base import SupabaseRepository, eq, iso, utcnow


class LeadsRepository(SupabaseRepository):
    table = "leads"

    async def get(self, lead_id: str) -> Lead | None:
        row = await self._first({"id": eq(lead_id)})
        return Lead.model_validate(row) if row else None

    async def find_open_for_conversation(self, conversation_id: str) -> Lead | None:
        row = await self._first(
            {"conversation_id": eq(conversation_id), "status": eq("attending")},
            order="created_at.desc",
        )
        return Lead.model_validate(row) if row else None

    async def create(
        self,
        *,
        conversation_id: str,
        seller_id: str,
        customer_name: str | None,
        phone_number: str | None,
        summary: str,
        reason: str | None,
        product_interest: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Lead:
        row = await self._insert(
            {
                "conversation_id": conversation_id,
                "seller_id": seller_id,
                "customer_name": customer_name,
                "phone_number": phone_number,
                "summary": summary,
                "reason": reason,
                "status": "attending",
                "generated_sale": False,
                "sale_value": None,
                "product_interest": product_interest,
                "metadata": metadata or {},
                "created_at": iso(utcnow()),
            }
        )
        return Lead.model_validate(row)

    async def update(self, lead_id: str, patch: dict[str, Any]) -> Lead | None:
        rows = await self._update({"id": eq(lead_id)}, patch)
        return Lead.model_validate(rows[0]) if rows else None


class SellersRepository(SupabaseRepository):
    table = "sellers"

    async def get(self, seller_id: str) -> Seller | None:
        row = await self._first({"id": eq(seller_id)})
        return Seller.model_validate(row) if row else None

    async def list_available(self) -> list[Seller]:
        rows = await self._select(
            {"active": eq(True), "deleted": eq(False)}, order="current_workload.asc,name.asc"
        )
        return [Seller.model_validate(row) for row in rows]

    async def find_by_phone(self, phone_number: str) -> Seller | None:
        row = await self._first({"phone_number": eq(phone_number), "deleted": eq(False)})
        return Seller.model_validate(row) if row else None

    async def adjust_workload(self, seller: Seller, delta: int) -> Seller | None:
        """Incrementa/decrementa la carga con chequeo optimista sobre el valor leído."""
        rows = await self._update(
            {"id": eq(seller.id), "current_workload": eq(seller.current_workload)},
            {"current_workload": max(0, seller.current_workload + delta)},
        )
        return Seller.model_validate(rows[0]) if rows else None
