"""
Order Hub - Entity Resolver

Multi-stage matching of the parsed order against the external directory
and catalog.

Line items, strict priority order:
1. Exact stocking code      -> confidence 1.0, method identifier
2. Exact barcode            -> confidence 0.95, method secondary_identifier
3. Fuzzy description search -> auto-accept a single strong hit, otherwise
                               keep up to MATCH_MAX_CANDIDATES candidates
4. Nothing                  -> unresolved without candidates

Customer: one free-text match classified resolved / ambiguous /
needs_input / not_found.

The resolver only reads. Persisting the outcome is the calling step's job.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from orderhub.services import config
from orderhub.services.case_models import (
    CUSTOMER_FIELD,
    CanonicalOrder,
    CustomerMatchStatus,
    LineItem,
    MatchCandidate,
    MatchMethod,
    line_item_field,
)
from orderhub.services.catalog_client import normalize_name

logger = logging.getLogger(__name__)


class ItemMatchStatus:
    RESOLVED = "resolved"
    UNRESOLVED_WITH_CANDIDATES = "unresolved_with_candidates"
    UNRESOLVED_WITHOUT_CANDIDATES = "unresolved_without_candidates"


def to_candidate(hit: Dict[str, Any]) -> MatchCandidate:
    return MatchCandidate(
        id=str(hit["id"]),
        name=hit.get("name") or "",
        score=float(hit.get("score") or 0.0),
        identifier=hit.get("identifier"),
        secondary_identifier=hit.get("secondary_identifier"),
        rate=hit.get("rate"),
        reason=hit.get("reason"),
    )


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ItemResolution:
    row: int
    status: str
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    method: Optional[MatchMethod] = None
    confidence: Optional[float] = None
    candidates: List[MatchCandidate] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.status == ItemMatchStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "status": self.status,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "method": self.method.value if self.method else None,
            "confidence": self.confidence,
            "candidates": [c.model_dump() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ItemResolution":
        return cls(
            row=data["row"],
            status=data["status"],
            item_id=data.get("item_id"),
            item_name=data.get("item_name"),
            method=MatchMethod(data["method"]) if data.get("method") else None,
            confidence=data.get("confidence"),
            candidates=[MatchCandidate.model_validate(c) for c in data.get("candidates", [])],
        )


@dataclass
class CustomerResolution:
    status: CustomerMatchStatus
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    method: Optional[MatchMethod] = None
    confidence: Optional[float] = None
    candidates: List[MatchCandidate] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.status == CustomerMatchStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "method": self.method.value if self.method else None,
            "confidence": self.confidence,
            "candidates": [c.model_dump() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomerResolution":
        return cls(
            status=CustomerMatchStatus(data["status"]),
            customer_id=data.get("customer_id"),
            customer_name=data.get("customer_name"),
            method=MatchMethod(data["method"]) if data.get("method") else None,
            confidence=data.get("confidence"),
            candidates=[MatchCandidate.model_validate(c) for c in data.get("candidates", [])],
        )


@dataclass
class CaseResolution:
    """Whole-case outcome: complete only when the customer and every line resolve."""
    customer: Optional[CustomerResolution] = None
    items: List[ItemResolution] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        if self.customer is None or not self.customer.is_resolved:
            return False
        return all(item.is_resolved for item in self.items)

    @property
    def unresolved(self) -> Dict[str, List[MatchCandidate]]:
        """Field key -> candidates, consumed when building the disambiguation prompt."""
        result = {}
        if self.customer is not None and not self.customer.is_resolved:
            result[CUSTOMER_FIELD] = list(self.customer.candidates)
        for item in self.items:
            if not item.is_resolved:
                result[line_item_field(item.row)] = list(item.candidates)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_complete": self.is_complete,
            "customer": self.customer.to_dict() if self.customer else None,
            "items": [i.to_dict() for i in self.items],
            "unresolved": {k: [c.model_dump() for c in v] for k, v in self.unresolved.items()},
        }


# =============================================================================
# RESOLVER
# =============================================================================

class EntityResolver:
    """Matches customers and line items through a catalog client."""

    def __init__(
        self,
        catalog,
        auto_accept_threshold: float = config.MATCH_AUTO_ACCEPT_THRESHOLD,
        min_candidate_score: float = config.MATCH_MIN_CANDIDATE_SCORE,
        max_candidates: int = config.MATCH_MAX_CANDIDATES,
        ambiguity_margin: float = config.MATCH_AMBIGUITY_MARGIN,
    ):
        self.catalog = catalog
        self.auto_accept_threshold = auto_accept_threshold
        self.min_candidate_score = min_candidate_score
        self.max_candidates = max_candidates
        self.ambiguity_margin = ambiguity_margin

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    async def resolve_item(self, line: LineItem) -> ItemResolution:
        """Run the matching strategies in priority order; the first that yields a hit decides."""
        if line.sku:
            hits = await self.catalog.search_items_by_identifier(line.sku)
            outcome = self._exact_outcome(line.row, hits, MatchMethod.IDENTIFIER, config.IDENTIFIER_MATCH_CONFIDENCE)
            if outcome:
                return outcome

        if line.gtin:
            hits = await self.catalog.search_items_by_secondary_identifier(line.gtin)
            outcome = self._exact_outcome(
                line.row, hits, MatchMethod.SECONDARY_IDENTIFIER, config.SECONDARY_IDENTIFIER_MATCH_CONFIDENCE,
            )
            if outcome:
                return outcome

        if line.description:
            hits = await self.catalog.search_items_by_text(line.description)
            candidates = sorted(
                (to_candidate(h) for h in hits if float(h.get("score") or 0.0) >= self.min_candidate_score),
                key=lambda c: c.score,
                reverse=True,
            )
            if len(candidates) == 1 and candidates[0].score > self.auto_accept_threshold:
                best = candidates[0]
                logger.info("Row %d auto-accepted fuzzy match %s (%.2f)", line.row, best.id, best.score)
                return ItemResolution(
                    row=line.row,
                    status=ItemMatchStatus.RESOLVED,
                    item_id=best.id,
                    item_name=best.name,
                    method=MatchMethod.FUZZY,
                    confidence=best.score,
                )
            if candidates:
                return ItemResolution(
                    row=line.row,
                    status=ItemMatchStatus.UNRESOLVED_WITH_CANDIDATES,
                    candidates=candidates[:self.max_candidates],
                )

        return ItemResolution(row=line.row, status=ItemMatchStatus.UNRESOLVED_WITHOUT_CANDIDATES)

    def _exact_outcome(self, row: int, hits: List[Dict[str, Any]], method: MatchMethod,
                       confidence: float) -> Optional[ItemResolution]:
        if not hits:
            return None
        if len(hits) == 1:
            hit = hits[0]
            return ItemResolution(
                row=row,
                status=ItemMatchStatus.RESOLVED,
                item_id=str(hit["id"]),
                item_name=hit.get("name") or "",
                method=method,
                confidence=confidence,
            )
        # Several exact hits: a human picks
        candidates = [to_candidate(dict(h, score=confidence)) for h in hits[:self.max_candidates]]
        logger.info("Row %d has %d exact %s matches", row, len(hits), method.value)
        return ItemResolution(row=row, status=ItemMatchStatus.UNRESOLVED_WITH_CANDIDATES, candidates=candidates)

    async def resolve_items(self, canonical: CanonicalOrder) -> List[ItemResolution]:
        """Resolve every line that is not already matched."""
        results = []
        for line in canonical.line_items:
            if line.is_resolved:
                continue
            results.append(await self.resolve_item(line))
        return results

    # -------------------------------------------------------------------------
    # Customer
    # -------------------------------------------------------------------------

    async def resolve_customer(self, raw_name: Optional[str]) -> CustomerResolution:
        if not raw_name or not raw_name.strip():
            return CustomerResolution(status=CustomerMatchStatus.NOT_FOUND)

        hits = await self.catalog.search_customers_by_text(raw_name)
        candidates = sorted(
            (to_candidate(h) for h in hits if float(h.get("score") or 0.0) >= self.min_candidate_score),
            key=lambda c: c.score,
            reverse=True,
        )
        if not candidates:
            return CustomerResolution(status=CustomerMatchStatus.NOT_FOUND)

        wanted = normalize_name(raw_name)
        exact = [c for c in candidates if normalize_name(c.name) == wanted]
        if len(exact) == 1:
            return CustomerResolution(
                status=CustomerMatchStatus.RESOLVED,
                customer_id=exact[0].id,
                customer_name=exact[0].name,
                method=MatchMethod.EXACT_NAME,
                confidence=1.0,
            )
        if len(exact) > 1:
            return CustomerResolution(
                status=CustomerMatchStatus.AMBIGUOUS,
                candidates=exact[:self.max_candidates],
            )

        candidates = candidates[:self.max_candidates]
        best = candidates[0]
        if len(candidates) > 1 and best.score - candidates[1].score < self.ambiguity_margin:
            return CustomerResolution(status=CustomerMatchStatus.AMBIGUOUS, candidates=candidates)
        if best.score > self.auto_accept_threshold:
            return CustomerResolution(
                status=CustomerMatchStatus.RESOLVED,
                customer_id=best.id,
                customer_name=best.name,
                method=MatchMethod.FUZZY,
                confidence=best.score,
            )
        return CustomerResolution(status=CustomerMatchStatus.NEEDS_INPUT, candidates=candidates)

    # -------------------------------------------------------------------------
    # Whole case
    # -------------------------------------------------------------------------

    async def resolve_case(self, canonical: CanonicalOrder) -> CaseResolution:
        customer = None
        if not canonical.customer.is_resolved:
            customer = await self.resolve_customer(canonical.customer.raw_name)
        else:
            customer = CustomerResolution(
                status=CustomerMatchStatus.RESOLVED,
                customer_id=canonical.customer.resolved_id,
                customer_name=canonical.customer.resolved_name,
                method=canonical.customer.match_method,
                confidence=canonical.customer.confidence,
            )
        items = await self.resolve_items(canonical)
        return CaseResolution(customer=customer, items=items)
