"""Selección de vendedor para un lead."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from leadrouter.models.lead import Seller
from leadrouter.services.qualification import fold


@dataclass(slots=True)
class LeadCriteria:
    product_interest: str | None = None
    summary: str = ""


class SellerMatcher(Protocol):
    def match(self, criteria: LeadCriteria, sellers: list[Seller]) -> str | None: ...


class LeastWorkloadMatcher:
    """Afinidad de especialidad primero; luego menor carga y mejor conversión."""

    def _specialty_hits(self, criteria: LeadCriteria, seller: Seller) -> int:
        haystack = fold(f"{criteria.product_interest or ''} {criteria.summary}")
        return sum(1 for specialty in seller.specialties if specialty and fold(specialty) in haystack)

    def match(self, criteria: LeadCriteria, sellers: list[Seller]) -> str | None:
        candidates = [seller for seller in sellers if seller.active and not seller.deleted]
        with_capacity = [seller for seller in candidates if seller.has_capacity]
        pool = with_capacity or candidates
        if not pool:
            return None
        best = min(
            pool,
            key=lambda seller: (
                -self._specialty_hits(criteria, seller),
                seller.current_workload,
                -seller.conversion_rate,
                -seller.performance_score,
                seller.name,
            ),
        )
        return best.id
