"""Tests for the copy registry and its guarded status changes."""

import pytest

from circulation_mcp.database.copy_registry import CopyRegistry
from circulation_mcp.database.repository import ConflictError, DuplicateError, NotFoundError
from circulation_mcp.models.enums import CopyConditionEnum, CopyStatusEnum


class TestLookups:
    def test_get_by_barcode(self, session, seeded):
        copy = CopyRegistry(session).get_by_barcode("BC001")
        assert copy.id == seeded["BC001"]
        assert copy.book_id == "BK001"
        assert copy.status == CopyStatusEnum.AVAILABLE
        assert copy.is_available

    def test_barcode_is_trimmed(self, session, seeded):
        assert CopyRegistry(session).get_by_barcode("  BC002 ").id == seeded["BC002"]

    def test_unknown_barcode(self, session):
        with pytest.raises(NotFoundError, match="NOPE"):
            CopyRegistry(session).get_by_barcode("NOPE")

    def test_unknown_copy_id(self, session):
        with pytest.raises(NotFoundError):
            CopyRegistry(session).get_copy(9999)


class TestTransitionStatus:
    def test_success_bumps_version(self, session, seeded):
        registry = CopyRegistry(session)
        copy = registry.transition_status(
            seeded["BC001"], CopyStatusEnum.AVAILABLE, CopyStatusEnum.BORROWED
        )
        assert copy.status == CopyStatusEnum.BORROWED
        assert copy.version == 2

    def test_condition_applied_in_same_change(self, session, seeded):
        registry = CopyRegistry(session)
        copy = registry.transition_status(
            seeded["BC001"],
            CopyStatusEnum.AVAILABLE,
            CopyStatusEnum.DAMAGED,
            condition=CopyConditionEnum.DAMAGED,
        )
        assert copy.condition == CopyConditionEnum.DAMAGED

    def test_wrong_expected_status_conflicts(self, session, seeded):
        registry = CopyRegistry(session)
        with pytest.raises(ConflictError):
            registry.transition_status(
                seeded["BC001"], CopyStatusEnum.BORROWED, CopyStatusEnum.AVAILABLE
            )
        assert registry.get_copy(seeded["BC001"]).version == 1

    def test_unknown_copy(self, session):
        with pytest.raises(NotFoundError):
            CopyRegistry(session).transition_status(
                9999, CopyStatusEnum.AVAILABLE, CopyStatusEnum.BORROWED
            )

    def test_stale_reader_loses_to_committed_writer(self, db_manager, seeded):
        """Two terminals observe the copy available; only the first claim wins."""
        copy_id = seeded["BC201"]
        with db_manager.session_scope() as first:
            observed = CopyRegistry(first).get_copy(copy_id).status

        with db_manager.session_scope() as second:
            CopyRegistry(second).transition_status(copy_id, observed, CopyStatusEnum.BORROWED)

        with pytest.raises(ConflictError), db_manager.session_scope() as third:
            CopyRegistry(third).transition_status(copy_id, observed, CopyStatusEnum.BORROWED)

        with db_manager.session_scope() as check:
            copy = CopyRegistry(check).get_copy(copy_id)
            assert copy.status == CopyStatusEnum.BORROWED
            assert copy.version == 2


class TestInventory:
    def test_count_by_status_is_zero_filled(self, session, seeded):
        registry = CopyRegistry(session)
        registry.transition_status(seeded["BC002"], CopyStatusEnum.AVAILABLE, CopyStatusEnum.LOST)

        inventory = registry.count_by_status("BK001")
        assert inventory.total == 2
        assert inventory.available == 1
        assert inventory.counts["lost"] == 1
        assert inventory.counts["reserved"] == 0
        assert set(inventory.counts) == {status.value for status in CopyStatusEnum}

    def test_list_by_title_reads_current_state_each_time(self, session, seeded):
        registry = CopyRegistry(session)
        available = registry.list_by_title("BK001", CopyStatusEnum.AVAILABLE)
        assert [copy.barcode for copy in available] == ["BC001", "BC002"]

        registry.transition_status(seeded["BC001"], CopyStatusEnum.AVAILABLE, CopyStatusEnum.BORROWED)
        assert [copy.barcode for copy in available] == ["BC002"]
        assert available.count() == 1
        assert registry.first_available("BK001").barcode == "BC002"

    def test_first_available_none_when_shelf_empty(self, session, seeded):
        registry = CopyRegistry(session)
        registry.transition_status(seeded["BC201"], CopyStatusEnum.AVAILABLE, CopyStatusEnum.BORROWED)
        assert registry.first_available("BK003") is None


class TestRegisterCopy:
    def test_register_numbers_the_copy(self, session):
        copy = CopyRegistry(session).register_copy("BK001", "BC003")
        assert copy.copy_number == "3"
        assert copy.status == CopyStatusEnum.AVAILABLE
        assert copy.version == 1

    def test_duplicate_barcode(self, session):
        with pytest.raises(DuplicateError):
            CopyRegistry(session).register_copy("BK002", "BC001")

    def test_unknown_title(self, session):
        with pytest.raises(NotFoundError):
            CopyRegistry(session).register_copy("BK999", "BC999")
