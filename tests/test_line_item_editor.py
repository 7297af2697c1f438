"""Tests for versioned line-item edits."""

from decimal import Decimal

import pytest

from clinic_cashier.schemas.settlement import MutationApplied, MutationRejected, Severity
from clinic_cashier.services.line_item_editor import LineItemEditor
from clinic_cashier.services.snapshot_cache import InvoiceSnapshotCache


@pytest.fixture
def resyncs():
    return []


@pytest.fixture
def cache(api):
    return InvoiceSnapshotCache(api)


@pytest.fixture
def editor(api, cache, resyncs):
    return LineItemEditor(api, cache, on_resync=resyncs.append)


@pytest.mark.asyncio
class TestAppliedEdits:
    async def test_add_service_replaces_cache(self, editor, cache, seeded):
        await cache.load("inv-1")
        result = await editor.add_service("X-ray", Decimal("80.00"))

        assert isinstance(result, MutationApplied)
        assert result.invoice.version == 3
        assert cache.version == 3
        assert any(item.item_name == "X-ray" for item in cache.current.services)

    async def test_versions_strictly_increase(self, editor, cache, seeded):
        await cache.load("inv-1")
        versions = [cache.version]

        await editor.add_service("X-ray", Decimal("80"))
        versions.append(cache.version)
        await editor.update_discount(percentage=Decimal("10"))
        versions.append(cache.version)
        await editor.update_outstanding_balance_flag(True)
        versions.append(cache.version)

        assert versions == sorted(set(versions))
        assert versions[-1] == 5

    async def test_update_service(self, editor, cache, clinic, seeded):
        await cache.load("inv-1")
        item_id = seeded["consultation"]["id"]

        result = await editor.update_service(item_id, "Follow-up consultation", Decimal("35"))

        assert result.applied
        item = cache.current.find_item(item_id)
        assert item.item_name == "Follow-up consultation"
        assert item.total_price == Decimal("35")
        assert item.quantity == 1

    async def test_remove_service(self, editor, cache, seeded):
        await cache.load("inv-1")
        item_id = seeded["consultation"]["id"]

        result = await editor.remove_service(item_id)

        assert result.applied
        assert cache.current.find_item(item_id) is None

    async def test_load_prescriptions(self, editor, cache, clinic, seeded):
        clinic.prescriptions["visit-1"] = [{"name": "Ibuprofen", "quantity": 20, "unit_price": 0.5}]
        await cache.load("inv-1")

        result = await editor.load_prescriptions()

        assert result.applied
        assert [m.item_name for m in cache.current.medicines] == ["Amoxicillin", "Ibuprofen"]


@pytest.mark.asyncio
class TestLocalValidation:
    @pytest.mark.parametrize("name,price", [("", Decimal("10")), ("X-ray", Decimal("0")), ("X-ray", Decimal("-5"))])
    async def test_bad_service_rejected_before_network(self, editor, cache, clinic, seeded, name, price):
        await cache.load("inv-1")
        calls_before = len(clinic.calls)

        result = await editor.add_service(name, price)

        assert isinstance(result, MutationRejected)
        assert result.reason == "validation"
        assert len(clinic.calls) == calls_before
        assert cache.version == 2

    async def test_discount_percentage_out_of_range(self, editor, cache, clinic, seeded):
        await cache.load("inv-1")
        calls_before = len(clinic.calls)

        result = await editor.update_discount(percentage=Decimal("120"))

        assert result.reason == "validation"
        assert len(clinic.calls) == calls_before

    async def test_discount_fields_are_exclusive(self, editor, cache, seeded):
        await cache.load("inv-1")
        result = await editor.update_discount(percentage=Decimal("10"), amount=Decimal("5"))
        assert result.reason == "validation"

    async def test_unknown_item(self, editor, cache, seeded):
        await cache.load("inv-1")
        result = await editor.remove_service("item-missing")
        assert result.reason == "validation"

    async def test_medicine_is_not_a_service(self, editor, cache, seeded):
        await cache.load("inv-1")
        result = await editor.update_service(seeded["amoxicillin"]["id"], "Amoxicillin", Decimal("1"))
        assert result.reason == "validation"


@pytest.mark.asyncio
class TestRejectedEdits:
    async def test_conflict_refreshes_cache_and_resyncs(self, editor, cache, clinic, resyncs, seeded):
        await cache.load("inv-1")
        clinic.bump("inv-1")

        result = await editor.add_service("X-ray", Decimal("80"))

        assert isinstance(result, MutationRejected)
        assert result.reason == "version_conflict"
        assert result.notice.severity == Severity.WARNING
        assert result.prior_invoice.version == 2
        assert result.current_invoice.version == 3
        assert cache.version == 3
        assert [inv.version for inv in resyncs] == [3]
        # no retry
        assert len(clinic.calls_to("POST", "/items/service")) == 1

    async def test_not_found_closes_view(self, editor, cache, clinic, seeded):
        await cache.load("inv-1")
        del clinic.invoices["inv-1"]

        result = await editor.update_outstanding_balance_flag(True)

        assert result.reason == "not_found"
        assert result.close_view

    async def test_backend_error_carries_message(self, editor, cache, clinic, seeded):
        await cache.load("inv-1")
        clinic.fail_once("PUT", "/invoices/inv-1/discount", 500, {"message": "database is down"})

        result = await editor.update_discount(amount=Decimal("5"))

        assert result.reason == "backend_error"
        assert result.notice.severity == Severity.ERROR
        assert "database is down" in result.notice.message
        assert cache.version == 2
