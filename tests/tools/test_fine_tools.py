"""Tests for the fine settlement tools."""

from datetime import timedelta

import pytest

from circulation_mcp.tools.circulation import (
    borrow_by_barcode_handler,
    report_lost_handler,
    return_by_barcode_handler,
)
from circulation_mcp.tools.fines import pay_fine_handler, settle_fines_handler, waive_fine_handler


def error_of(result: dict) -> dict:
    assert result["isError"] is True
    return result["data"]["error"]


@pytest.fixture
async def late_fine(coordinator, clock) -> int:
    """A 3-day-late return of BC001 by STU001: a 150.00 fine."""
    borrowed = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
    clock.current = clock.current + timedelta(days=17)
    await return_by_barcode_handler({"barcode": "BC001"})
    return borrowed["data"]["transaction"]["id"]


@pytest.fixture
async def lost_fine(coordinator) -> int:
    borrowed = await borrow_by_barcode_handler({"barcode": "BC101", "student_id": "STU002"})
    transaction_id = borrowed["data"]["transaction"]["id"]
    await report_lost_handler({"transaction_id": transaction_id})
    return transaction_id


class TestPayFineTool:
    async def test_pay(self, late_fine, actor, coordinator):
        result = await pay_fine_handler({"transaction_id": late_fine})

        assert not result.get("isError")
        assert "150.00 paid by STU001" in result["content"][0]["text"]
        assert result["data"]["fine"]["paid"] is True
        assert coordinator.unpaid_fines(actor, "STU001") == 0

    async def test_pay_twice(self, late_fine):
        await pay_fine_handler({"transaction_id": late_fine})
        result = await pay_fine_handler({"transaction_id": late_fine})
        assert error_of(result)["code"] == "fine_settled"

    async def test_active_loan(self, coordinator):
        borrowed = await borrow_by_barcode_handler({"barcode": "BC002", "student_id": "STU003"})
        result = await pay_fine_handler({"transaction_id": borrowed["data"]["transaction"]["id"]})
        assert error_of(result)["code"] == "fine_not_final"


class TestWaiveFineTool:
    async def test_waive(self, late_fine):
        result = await waive_fine_handler({"transaction_id": late_fine, "reason": "Family emergency"})

        assert not result.get("isError")
        fine = result["data"]["fine"]
        assert fine["waived"] is True
        assert fine["waive_reason"] == "Family emergency"

    async def test_blank_reason_is_a_business_refusal(self, late_fine):
        result = await waive_fine_handler({"transaction_id": late_fine, "reason": "  "})
        error = error_of(result)
        assert error["kind"] == "policy_violation"
        assert error["code"] == "waive_reason_required"

    async def test_missing_reason(self, late_fine):
        result = await waive_fine_handler({"transaction_id": late_fine})
        assert error_of(result)["kind"] == "invalid_params"


class TestSettleFinesTool:
    async def test_bulk_pay_with_failures(self, late_fine, lost_fine):
        result = await settle_fines_handler({"transaction_ids": [late_fine, lost_fine, 777]})

        assert not result.get("isError")
        assert "2 fine(s) paid, total 950.00" in result["content"][0]["text"]
        assert "1 could not be settled" in result["content"][0]["text"]
        settled = result["data"]["result"]["settled"]
        assert [fine["id"] for fine in settled] == [late_fine, lost_fine]
        assert len(result["data"]["result"]["failed"]) == 1

    async def test_bulk_waive(self, late_fine, lost_fine, actor, coordinator):
        result = await settle_fines_handler(
            {"transaction_ids": [late_fine, lost_fine], "action": "waive", "reason": "Amnesty week"}
        )
        assert result["data"]["result"]["total_amount"] == 950.0

        stats = coordinator.fine_statistics(actor)
        assert stats.total_waived == 950.0
        assert stats.total_outstanding == 0

    async def test_waive_requires_reason(self, late_fine):
        result = await settle_fines_handler({"transaction_ids": [late_fine], "action": "waive"})
        assert error_of(result)["kind"] == "invalid_params"

    async def test_empty_batch(self, coordinator):
        result = await settle_fines_handler({"transaction_ids": []})
        assert error_of(result)["kind"] == "invalid_params"
