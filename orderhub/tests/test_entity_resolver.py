"""
Tests for catalog normalization/scoring and the entity resolver.

The stub catalog returns fixed scores so threshold behaviour is exact.
"""
import pytest

from orderhub.services.case_models import CanonicalOrder, CustomerInfo, CustomerMatchStatus, LineItem, MatchMethod
from orderhub.services.catalog_client import (
    InMemoryCatalog,
    calculate_fuzzy_score,
    normalize_barcode,
    normalize_identifier,
    normalize_name,
)
from orderhub.services.entity_resolver import EntityResolver, ItemMatchStatus


class StubCatalog:
    """Canned search results; records which lookups ran."""

    def __init__(self, by_sku=None, by_gtin=None, by_text=None, customers=None):
        self.by_sku = by_sku or {}
        self.by_gtin = by_gtin or {}
        self.by_text = by_text or {}
        self.customers = customers or {}
        self.lookups = []

    async def search_items_by_identifier(self, identifier):
        self.lookups.append(("sku", identifier))
        return list(self.by_sku.get(identifier, []))

    async def search_items_by_secondary_identifier(self, barcode):
        self.lookups.append(("gtin", barcode))
        return list(self.by_gtin.get(barcode, []))

    async def search_items_by_text(self, text):
        self.lookups.append(("text", text))
        return list(self.by_text.get(text, []))

    async def search_customers_by_text(self, name):
        self.lookups.append(("customer", name))
        return list(self.customers.get(name, []))


def hit(item_id, score, name=None):
    return {"id": item_id, "name": name or item_id, "score": score}


class TestNormalization:

    def test_normalize_name_strips_suffixes(self):
        """Business suffixes and punctuation do not affect matching."""
        assert normalize_name("Acme Foods, Inc.") == "acme foods"
        assert normalize_name("Globex Corporation") == "globex"
        assert normalize_name("  Initech   LLC ") == "initech"
        assert normalize_name("") == ""

    def test_normalize_identifier(self):
        """Stocking codes compare case-insensitively without whitespace."""
        assert normalize_identifier(" oat-1kg ") == "OAT-1KG"
        assert normalize_identifier("ALM 1L") == "ALM1L"
        assert normalize_identifier(None) == ""

    def test_normalize_barcode(self):
        assert normalize_barcode("4006-3813 33931") == "4006381333931"

    def test_fuzzy_score_bounds(self):
        """Identical names score 1.0; unrelated names score low."""
        assert calculate_fuzzy_score("Acme Foods Inc", "ACME FOODS") == 1.0
        assert calculate_fuzzy_score("Acme Foods", "") == 0.0
        assert calculate_fuzzy_score("Acme Foods", "Zebra Logistics") < 0.5


class TestItemResolution:
    """Strict strategy priority and fuzzy thresholds."""

    @pytest.mark.asyncio
    async def test_identifier_beats_fuzzy(self):
        """An exact stocking-code hit wins even when a fuzzy hit scores higher."""
        catalog = StubCatalog(
            by_sku={"OAT-1KG": [hit("item-oats", 1.0)]},
            by_text={"Rolled oats": [hit("item-other", 0.99)]},
        )
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, sku="OAT-1KG", description="Rolled oats"))

        assert result.status == ItemMatchStatus.RESOLVED
        assert result.item_id == "item-oats"
        assert result.method == MatchMethod.IDENTIFIER
        assert result.confidence == 1.0
        assert ("text", "Rolled oats") not in catalog.lookups

    @pytest.mark.asyncio
    async def test_barcode_after_missing_identifier(self):
        """No stocking-code hit falls through to the barcode at 0.95."""
        catalog = StubCatalog(by_gtin={"5012345678900": [hit("item-almond", 1.0)]})
        result = await EntityResolver(catalog).resolve_item(
            LineItem(row=2, sku="UNKNOWN", gtin="5012345678900", description="Almond milk"),
        )
        assert result.method == MatchMethod.SECONDARY_IDENTIFIER
        assert result.confidence == 0.95
        assert [kind for kind, _ in catalog.lookups] == ["sku", "gtin"]

    @pytest.mark.asyncio
    async def test_several_exact_hits_need_a_human(self):
        """Two items sharing a stocking code are offered as candidates."""
        catalog = StubCatalog(by_sku={"DUP": [hit("a", 1.0), hit("b", 1.0)]})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, sku="DUP"))
        assert result.status == ItemMatchStatus.UNRESOLVED_WITH_CANDIDATES
        assert [c.id for c in result.candidates] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_single_strong_fuzzy_hit_auto_accepted(self):
        """One candidate above 0.85 resolves by fuzzy match."""
        catalog = StubCatalog(by_text={"honey jar": [hit("item-honey", 0.86)]})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=3, description="honey jar"))
        assert result.status == ItemMatchStatus.RESOLVED
        assert result.method == MatchMethod.FUZZY
        assert result.confidence == 0.86

    @pytest.mark.asyncio
    async def test_two_candidates_are_not_auto_accepted(self):
        """A strong top hit with a runner-up above the floor needs a human."""
        catalog = StubCatalog(by_text={"oats": [hit("a", 0.9), hit("b", 0.6)]})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, description="oats"))
        assert result.status == ItemMatchStatus.UNRESOLVED_WITH_CANDIDATES
        assert [c.id for c in result.candidates] == ["a", "b"]
        assert result.item_id is None

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self):
        """A single hit at exactly 0.85 is a candidate, not a match."""
        catalog = StubCatalog(by_text={"oats": [hit("a", 0.85)]})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, description="oats"))
        assert result.status == ItemMatchStatus.UNRESOLVED_WITH_CANDIDATES

    @pytest.mark.asyncio
    async def test_weak_hits_are_dropped(self):
        """Hits below 0.5 are not offered."""
        catalog = StubCatalog(by_text={"mystery": [hit("a", 0.4)]})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, description="mystery"))
        assert result.status == ItemMatchStatus.UNRESOLVED_WITHOUT_CANDIDATES
        assert result.candidates == []

    @pytest.mark.asyncio
    async def test_candidates_capped_at_five(self):
        """At most five candidates, best first."""
        hits = [hit(f"i{n}", 0.5 + n * 0.05) for n in range(7)]
        catalog = StubCatalog(by_text={"box": hits})
        result = await EntityResolver(catalog).resolve_item(LineItem(row=1, description="box"))
        assert len(result.candidates) == 5
        assert result.candidates[0].id == "i6"

    @pytest.mark.asyncio
    async def test_resolve_items_skips_matched_lines(self):
        """Lines already matched are not looked up again."""
        canonical = CanonicalOrder(line_items=[
            LineItem(row=1, sku="OAT-1KG", resolved_item_id="item-oats", resolved_name="Oats",
                     match_method=MatchMethod.IDENTIFIER, confidence=1.0),
            LineItem(row=2, description="mystery"),
        ])
        catalog = StubCatalog()
        results = await EntityResolver(catalog).resolve_items(canonical)
        assert [r.row for r in results] == [2]
        assert ("sku", "OAT-1KG") not in catalog.lookups


class TestCustomerResolution:

    @pytest.mark.asyncio
    async def test_exact_normalized_name(self):
        """A candidate whose normalized name equals the input resolves at 1.0."""
        catalog = StubCatalog(customers={"Acme Foods": [hit("cust-acme", 0.8, "Acme Foods Inc."),
                                                        hit("cust-acme-west", 0.78, "Acme Foods West")]})
        result = await EntityResolver(catalog).resolve_customer("Acme Foods")
        assert result.status == CustomerMatchStatus.RESOLVED
        assert result.customer_id == "cust-acme"
        assert result.method == MatchMethod.EXACT_NAME
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_close_scores_are_ambiguous(self):
        """Top two within the margin are ambiguous, even above the threshold."""
        catalog = StubCatalog(customers={"Acme": [hit("a", 0.92, "Acme East"), hit("b", 0.88, "Acme West")]})
        result = await EntityResolver(catalog).resolve_customer("Acme")
        assert result.status == CustomerMatchStatus.AMBIGUOUS
        assert [c.id for c in result.candidates] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_clear_fuzzy_winner(self):
        """A clear top hit above the threshold resolves by fuzzy match."""
        catalog = StubCatalog(customers={"Globex Corp": [hit("g", 0.9, "Globex Holdings"), hit("x", 0.55, "Globe")]})
        result = await EntityResolver(catalog).resolve_customer("Globex Corp")
        assert result.status == CustomerMatchStatus.RESOLVED
        assert result.method == MatchMethod.FUZZY

    @pytest.mark.asyncio
    async def test_weak_winner_needs_input(self):
        catalog = StubCatalog(customers={"Initrode": [hit("i", 0.7, "Initech")]})
        result = await EntityResolver(catalog).resolve_customer("Initrode")
        assert result.status == CustomerMatchStatus.NEEDS_INPUT
        assert [c.id for c in result.candidates] == ["i"]

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self):
        """A lone customer hit at exactly 0.85 is offered, not accepted."""
        catalog = StubCatalog(customers={"Initrode": [hit("i", 0.85, "Initech")]})
        result = await EntityResolver(catalog).resolve_customer("Initrode")
        assert result.status == CustomerMatchStatus.NEEDS_INPUT
        assert result.customer_id is None

    @pytest.mark.asyncio
    async def test_not_found(self):
        """No name, or nothing above the floor, is not_found."""
        catalog = StubCatalog(customers={"Nobody": [hit("n", 0.2)]})
        resolver = EntityResolver(catalog)
        assert (await resolver.resolve_customer("Nobody")).status == CustomerMatchStatus.NOT_FOUND
        assert (await resolver.resolve_customer("  ")).status == CustomerMatchStatus.NOT_FOUND


class TestResolveCase:

    @pytest.mark.asyncio
    async def test_complete_only_when_everything_resolves(self):
        """The whole-case outcome lists every unresolved field."""
        catalog = InMemoryCatalog(
            items=[{"id": "item-oats", "name": "Organic Rolled Oats", "sku": "OAT-1KG"}],
            customers=[{"id": "cust-acme", "name": "Acme Foods Inc."}],
        )
        canonical = CanonicalOrder(
            customer=CustomerInfo(raw_name="Acme Foods"),
            line_items=[LineItem(row=1, sku="oat-1kg"), LineItem(row=2, description="Zebra stripes")],
        )
        resolution = await EntityResolver(catalog).resolve_case(canonical)

        assert resolution.customer.customer_id == "cust-acme"
        assert resolution.items[0].item_id == "item-oats"
        assert resolution.is_complete is False
        assert list(resolution.unresolved) == ["line_items[2]"]
