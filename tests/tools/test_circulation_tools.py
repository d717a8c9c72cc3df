"""
Tests for the circulation tools (borrow, return, renew, lost, overdue notices).

These tests cover:
1. Input validation
2. Success responses and their structured data
3. Refusals carrying the error kind and code
4. State changes visible through the coordinator
"""

from datetime import timedelta

import pytest

from circulation_mcp.config import reset_config
from circulation_mcp.tools.circulation import (
    borrow_by_barcode_handler,
    notify_overdue_handler,
    renew_transaction_handler,
    report_lost_handler,
    return_by_barcode_handler,
)


def error_of(result: dict) -> dict:
    assert result["isError"] is True
    return result["data"]["error"]


class TestBorrowByBarcodeTool:
    async def test_borrow_success(self, coordinator, actor):
        result = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})

        assert not result.get("isError")
        assert result["content"][0]["type"] == "text"
        assert "lent to STU001" in result["content"][0]["text"]

        transaction = result["data"]["transaction"]
        assert transaction["student_id"] == "STU001"
        assert transaction["book_id"] == "BK001"
        assert transaction["status"] == "active"
        assert transaction["processed_by"] == "desk-test"
        assert coordinator.scan_lookup(actor, "BC001").book_copy.status.value == "borrowed"

    async def test_copy_not_available(self, coordinator):
        await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        result = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU002"})

        error = error_of(result)
        assert error["kind"] == "policy_violation"
        assert error["code"] == "copy_not_available"
        assert "not available" in result["content"][0]["text"]

    async def test_suspended_student(self, coordinator):
        result = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU005"})
        assert error_of(result)["code"] == "student_suspended"

    async def test_unknown_barcode(self, coordinator):
        result = await borrow_by_barcode_handler({"barcode": "NOPE", "student_id": "STU001"})
        assert error_of(result)["kind"] == "not_found"

    @pytest.mark.parametrize(
        "arguments",
        [
            {"student_id": "STU001"},
            {"barcode": "", "student_id": "STU001"},
            {"barcode": "BC001"},
        ],
    )
    async def test_invalid_params(self, coordinator, arguments):
        result = await borrow_by_barcode_handler(arguments)
        assert error_of(result)["kind"] == "invalid_params"

    async def test_terminal_without_permission(self, coordinator, monkeypatch):
        monkeypatch.setenv("CIRCULATION_TERMINAL_PERMISSIONS", '["transactions.view"]')
        reset_config()

        result = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        error = error_of(result)
        assert error["kind"] == "forbidden"
        assert error["code"] == "transactions.borrow"


class TestReturnByBarcodeTool:
    async def test_on_time_return(self, coordinator):
        await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        result = await return_by_barcode_handler({"barcode": "BC001"})

        assert not result.get("isError")
        assert "no fine" in result["content"][0]["text"]
        assert result["data"]["transaction"]["status"] == "returned"
        assert result["data"]["transaction"]["fine_amount"] == 0.0

    async def test_late_return_reports_fine(self, coordinator, clock):
        await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        clock.advance(days=17)

        result = await return_by_barcode_handler({"barcode": "BC001", "condition": "fair"})
        assert "Fine assessed: 150.00" in result["content"][0]["text"]
        assert result["data"]["transaction"]["return_condition"] == "fair"

    async def test_damaged_return(self, coordinator, actor):
        await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        result = await return_by_barcode_handler(
            {"barcode": "BC001", "condition": "damaged", "condition_notes": "Spine cracked"}
        )

        assert result["data"]["transaction"]["condition_notes"] == "Spine cracked"
        assert coordinator.scan_lookup(actor, "BC001").book_copy.status.value == "damaged"

    async def test_nothing_to_return(self, coordinator):
        result = await return_by_barcode_handler({"barcode": "BC001"})
        error = error_of(result)
        assert error["kind"] == "invalid_state"
        assert error["code"] == "no_active_transaction"

    async def test_unknown_condition(self, coordinator):
        result = await return_by_barcode_handler({"barcode": "BC001", "condition": "soggy"})
        assert error_of(result)["kind"] == "invalid_params"


class TestRenewAndLostTools:
    async def test_renew(self, coordinator):
        borrowed = await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        transaction_id = borrowed["data"]["transaction"]["id"]

        result = await renew_transaction_handler({"transaction_id": transaction_id})
        assert not result.get("isError")
        assert result["data"]["transaction"]["renewal_count"] == 1
        assert "1 renewal(s)" in result["content"][0]["text"]

    async def test_renew_refused_while_title_reserved(self, coordinator, actor):
        borrowed = await borrow_by_barcode_handler({"barcode": "BC201", "student_id": "STU004"})
        coordinator.reserve(actor, "BK003", "STU001")

        result = await renew_transaction_handler(
            {"transaction_id": borrowed["data"]["transaction"]["id"]}
        )
        assert error_of(result)["code"] == "copy_reserved"

    async def test_renew_invalid_id(self, coordinator):
        result = await renew_transaction_handler({"transaction_id": 0})
        assert error_of(result)["kind"] == "invalid_params"

    async def test_report_lost(self, coordinator):
        borrowed = await borrow_by_barcode_handler({"barcode": "BC101", "student_id": "STU002"})

        result = await report_lost_handler({"transaction_id": borrowed["data"]["transaction"]["id"]})
        assert result["data"]["transaction"]["status"] == "lost"
        assert result["data"]["transaction"]["fine_amount"] == 800.0
        assert "800.00" in result["content"][0]["text"]

    async def test_report_lost_unknown_transaction(self, coordinator):
        result = await report_lost_handler({"transaction_id": 4242})
        assert error_of(result)["kind"] == "not_found"


class TestNotifyOverdueTool:
    async def test_sends_each_notice_once(self, coordinator, clock, notifier):
        await borrow_by_barcode_handler({"barcode": "BC001", "student_id": "STU001"})
        clock.current = clock.current + timedelta(days=15)

        result = await notify_overdue_handler({})
        assert "Sent 1 overdue notice(s)" in result["content"][0]["text"]
        notice = result["data"]["notices"][0]
        assert notice["barcode"] == "BC001"
        assert notice["student_name"] == "Ada Lovelace"
        assert len(notifier.overdue) == 1

        again = await notify_overdue_handler({})
        assert again["data"]["notices"] == []
