"""Tests for the circulation coordinator: end-to-end desk scenarios."""

import threading
from datetime import timedelta

import pytest

from circulation_mcp.auth import BORROW, VIEW_TRANSACTIONS, ActorContext
from circulation_mcp.config import CirculationPolicy
from circulation_mcp.coordinator import CirculationCoordinator
from circulation_mcp.database.copy_registry import CopyRegistry
from circulation_mcp.database.repository import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    PolicyViolationError,
    StateCode,
    ViolationCode,
)
from circulation_mcp.database.schema import BookCopy, Student
from circulation_mcp.database.student_repository import StudentRepository
from circulation_mcp.locks import TitleLockRegistry
from circulation_mcp.models.enums import (
    CopyConditionEnum,
    CopyStatusEnum,
    ReservationStatusEnum,
    TransactionStatusEnum,
)


def violation_of(exc_info) -> ViolationCode:
    return exc_info.value.violation


class TestScenarios:
    def test_a_borrow_available_copy(self, coordinator, actor, clock):
        transaction = coordinator.borrow_by_barcode(actor, "BC001", "STU001")

        assert transaction.status == TransactionStatusEnum.ACTIVE
        assert transaction.due_date == clock() + timedelta(days=14)
        assert transaction.processed_by == "desk-1"
        scan = coordinator.scan_lookup(actor, "BC001")
        assert scan.book_copy.status == CopyStatusEnum.BORROWED
        assert not scan.can_borrow

    def test_b_renewal_limit(self, coordinator, actor):
        transaction = coordinator.borrow_by_barcode(actor, "BC001", "STU001")

        renewed = coordinator.renew(actor, transaction.id)
        assert renewed.renewal_count == 1
        assert renewed.due_date == transaction.due_date + timedelta(days=14)

        coordinator.renew(actor, transaction.id)
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.renew(actor, transaction.id)
        assert violation_of(exc_info) == ViolationCode.MAX_RENEWALS_REACHED
        assert not coordinator.can_renew(actor, transaction.id).can_renew

    def test_c_hold_expires_and_passes_to_next(self, coordinator, actor, clock, notifier):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        first = coordinator.reserve(actor, "BK003", "STU001")
        clock.advance(minutes=1)
        second = coordinator.reserve(actor, "BK003", "STU002")
        assert (first.queue_position, second.queue_position) == (1, 2)

        coordinator.return_by_barcode(actor, "BC201")
        position = coordinator.queue_position(actor, "BK003", "STU001")
        assert position.status == ReservationStatusEnum.READY
        assert position.position == 1
        assert [r.student_id for r in notifier.ready] == ["STU001"]
        assert notifier.ready[0].expires_at == clock() + timedelta(hours=48)

        clock.advance(hours=49)
        expired = coordinator.expire_ready_holds(actor)
        assert [r.id for r in expired] == [first.id]

        position = coordinator.queue_position(actor, "BK003", "STU002")
        assert position.status == ReservationStatusEnum.READY
        assert position.position == 1
        assert position.total_in_queue == 1
        assert [r.student_id for r in notifier.ready] == ["STU001", "STU002"]

    def test_d_borrow_rejections(self, coordinator, actor):
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.borrow_by_barcode(actor, "BC001", "STU006")
        assert violation_of(exc_info) == ViolationCode.STUDENT_OVER_LIMIT

        coordinator.borrow_by_barcode(actor, "BC001", "STU001")
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.borrow_by_barcode(actor, "BC001", "STU002")
        assert violation_of(exc_info) == ViolationCode.COPY_NOT_AVAILABLE

    def test_e_fine_frozen_at_return(self, coordinator, actor, clock):
        transaction = coordinator.borrow_by_barcode(actor, "BC001", "STU001")
        clock.current = transaction.due_date + timedelta(days=5)

        returned = coordinator.return_by_barcode(actor, "BC001")
        assert returned.fine_amount == 250.0

        clock.advance(days=365)
        assert coordinator.compute_current_fine(actor, transaction.id) == 250.0
        fine = coordinator.get_fine(actor, transaction.id)
        assert fine.amount == 250.0
        assert fine.is_final
        assert fine.status == "unpaid"


class TestQueueInvariants:
    def test_positions_stay_contiguous(self, coordinator, actor, clock):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        reservations = {}
        for student in ("STU001", "STU002", "STU003"):
            reservations[student] = coordinator.reserve(actor, "BK003", student)
            clock.advance(seconds=1)

        coordinator.cancel_reservation(actor, reservations["STU002"].id)
        coordinator.return_by_barcode(actor, "BC201")
        coordinator.cancel_reservation(actor, reservations["STU001"].id)

        queue = coordinator.list_queue(actor, "BK003")
        assert [(r.student_id, r.queue_position, r.status) for r in queue] == [
            ("STU003", 1, ReservationStatusEnum.READY)
        ]

        coordinator.reserve(actor, "BK003", "STU002")
        queue = coordinator.list_queue(actor, "BK003")
        assert [r.queue_position for r in queue] == [1, 2]

    def test_borrow_by_barcode_fulfils_own_hold(self, coordinator, actor):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        reservation = coordinator.reserve(actor, "BK003", "STU001")
        coordinator.return_by_barcode(actor, "BC201")

        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.borrow_by_barcode(actor, "BC201", "STU002")
        assert violation_of(exc_info) == ViolationCode.COPY_NOT_AVAILABLE

        scan = coordinator.scan_lookup(actor, "BC201")
        assert scan.held_for_student_id == "STU001"

        transaction = coordinator.borrow_by_barcode(actor, "BC201", "STU001")
        assert transaction.student_id == "STU001"
        assert coordinator.list_queue(actor, "BK003") == []
        with pytest.raises(InvalidStateError) as exc_info:
            coordinator.cancel_reservation(actor, reservation.id)
        assert exc_info.value.state == StateCode.NOT_CANCELLABLE

    def test_borrowing_another_copy_releases_own_hold(self, coordinator, actor):
        coordinator.borrow_by_barcode(actor, "BC001", "STU002")
        coordinator.borrow_by_barcode(actor, "BC002", "STU003")
        reservation = coordinator.reserve(actor, "BK001", "STU001")
        coordinator.return_by_barcode(actor, "BC001")
        assert coordinator.scan_lookup(actor, "BC001").held_for_student_id == "STU001"
        coordinator.return_by_barcode(actor, "BC002")

        transaction = coordinator.borrow_by_barcode(actor, "BC002", "STU001")
        assert transaction.copy_id == coordinator.scan_lookup(actor, "BC002").book_copy.id

        position = coordinator.queue_position(actor, "BK001", "STU001")
        assert not position.has_reserved
        with pytest.raises(InvalidStateError):
            coordinator.cancel_reservation(actor, reservation.id)

        released = coordinator.scan_lookup(actor, "BC001")
        assert released.book_copy.status == CopyStatusEnum.AVAILABLE
        assert released.can_borrow
        assert coordinator.borrow_by_barcode(actor, "BC001", "STU004").student_id == "STU004"

    def test_fulfill_reservation(self, coordinator, actor):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        reservation = coordinator.reserve(actor, "BK003", "STU001")
        coordinator.return_by_barcode(actor, "BC201")

        transaction = coordinator.fulfill_reservation(actor, reservation.id)
        assert transaction.copy_id == coordinator.scan_lookup(actor, "BC201").book_copy.id
        assert coordinator.scan_lookup(actor, "BC201").borrower.student_id == "STU001"

    def test_fulfill_without_copy_requeues(self, coordinator, actor, clock):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        reservation = coordinator.reserve(actor, "BK003", "STU001")
        clock.advance(minutes=1)
        coordinator.reserve(actor, "BK003", "STU002")
        coordinator.return_by_barcode(actor, "BC201")

        # The held copy is found damaged on the hold shelf
        with coordinator.db.session_scope() as session:
            registry = CopyRegistry(session)
            copy = registry.get_by_barcode("BC201")
            registry.transition_status(copy.id, CopyStatusEnum.RESERVED, CopyStatusEnum.DAMAGED)

        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.fulfill_reservation(actor, reservation.id)
        assert violation_of(exc_info) == ViolationCode.COPY_NOT_AVAILABLE

        position = coordinator.queue_position(actor, "BK003", "STU001")
        assert position.status == ReservationStatusEnum.PENDING
        assert position.position == 1

        restored = coordinator.restore_copy(actor, "BC201")
        assert restored.status == CopyStatusEnum.RESERVED
        assert coordinator.scan_lookup(actor, "BC201").held_for_student_id == "STU001"

    def test_reserve_refused_while_copy_on_shelf(self, coordinator, actor):
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.reserve(actor, "BK001", "STU001")
        assert violation_of(exc_info) == ViolationCode.COPY_IMMEDIATELY_AVAILABLE

    def test_mark_ready(self, coordinator, actor, notifier):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        reservation = coordinator.reserve(actor, "BK003", "STU001")
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.mark_ready(actor, reservation.id)
        assert violation_of(exc_info) == ViolationCode.COPY_NOT_AVAILABLE
        assert notifier.ready == []


@pytest.mark.concurrency
class TestConcurrency:
    def test_only_one_concurrent_borrow_wins(self, coordinator, actor):
        barrier = threading.Barrier(2)
        outcomes: dict[str, object] = {}

        def attempt(student_id: str) -> None:
            barrier.wait()
            try:
                outcomes[student_id] = coordinator.borrow_by_barcode(actor, "BC201", student_id)
            except PolicyViolationError as e:
                outcomes[student_id] = e

        threads = [threading.Thread(target=attempt, args=(s,)) for s in ("STU001", "STU002")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        winners = [o for o in outcomes.values() if not isinstance(o, Exception)]
        losers = [o for o in outcomes.values() if isinstance(o, PolicyViolationError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].violation == ViolationCode.COPY_NOT_AVAILABLE
        assert coordinator.scan_lookup(actor, "BC201").borrower.student_id == winners[0].student_id

    def test_borrowing_limit_holds_across_titles(self, coordinator, actor, db_manager, monkeypatch):
        with db_manager.session_scope() as session:
            session.get(Student, "STU001").max_books = 1

        # Both terminals read the student before either one lends.
        barrier = threading.Barrier(2)
        read_student = StudentRepository.require

        def require_then_wait(repository, student_id):
            row = read_student(repository, student_id)
            barrier.wait(timeout=10)
            return row

        monkeypatch.setattr(StudentRepository, "require", require_then_wait)
        outcomes: dict[str, object] = {}

        def attempt(barcode: str) -> None:
            try:
                outcomes[barcode] = coordinator.borrow_by_barcode(actor, barcode, "STU001")
            except PolicyViolationError as e:
                outcomes[barcode] = e

        threads = [threading.Thread(target=attempt, args=(b,)) for b in ("BC001", "BC101")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        winners = [b for b, o in outcomes.items() if not isinstance(o, Exception)]
        losers = [o for o in outcomes.values() if isinstance(o, PolicyViolationError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].violation == ViolationCode.STUDENT_OVER_LIMIT

        with db_manager.session_scope() as session:
            assert session.get(Student, "STU001").current_books == 1
            statuses = {
                copy.barcode: copy.status
                for copy in session.query(BookCopy).filter(BookCopy.barcode.in_(["BC001", "BC101"]))
            }
        loser = "BC101" if winners == ["BC001"] else "BC001"
        assert statuses == {winners[0]: CopyStatusEnum.BORROWED, loser: CopyStatusEnum.AVAILABLE}

    def test_conflict_is_retried_once(self, db_manager, seeded, clock):
        coordinator = CirculationCoordinator(db_manager, CirculationPolicy(), now_fn=clock)
        calls = []

        def flaky(queue):
            calls.append(1)
            if len(calls) == 1:
                raise ConflictError("copy changed underneath")
            return "done"

        assert coordinator._mutate("BK001", "test", flaky) == "done"
        assert len(calls) == 2

    def test_second_conflict_surfaces(self, db_manager, seeded, clock):
        coordinator = CirculationCoordinator(db_manager, CirculationPolicy(), now_fn=clock)

        def always_conflicts(queue):
            raise ConflictError("copy changed underneath")

        with pytest.raises(ConflictError):
            coordinator._mutate("BK001", "test", always_conflicts)

    def test_locks_are_per_title(self):
        locks = TitleLockRegistry()
        with locks.hold("BK001"), locks.hold("BK002"), locks.hold("BK001"):
            assert len(locks) == 2


class TestAuthorization:
    def test_missing_permission(self, coordinator):
        viewer = ActorContext(actor_id="kiosk", permissions=frozenset({VIEW_TRANSACTIONS}))
        with pytest.raises(AuthorizationError) as exc_info:
            coordinator.borrow_by_barcode(viewer, "BC001", "STU001")
        assert exc_info.value.code == BORROW
        assert exc_info.value.kind == "forbidden"
        assert coordinator.scan_lookup(viewer, "BC001").can_borrow

    def test_checked_before_any_lookup(self, coordinator):
        nobody = ActorContext(actor_id="anon")
        with pytest.raises(AuthorizationError):
            coordinator.return_by_barcode(nobody, "NO-SUCH-BARCODE")


class TestNotifications:
    def test_overdue_notices_sent_once(self, coordinator, actor, clock, notifier):
        coordinator.borrow_by_barcode(actor, "BC001", "STU001")
        clock.advance(days=16)

        notices = coordinator.notify_overdue(actor)
        assert [n.student_id for n in notices] == ["STU001"]
        assert notifier.overdue[0].days_overdue == 2
        assert coordinator.notify_overdue(actor) == []

    def test_failing_notifier_does_not_undo_the_operation(self, db_manager, seeded, actor, clock):
        class Broken:
            def reservation_ready(self, reservation):
                raise RuntimeError("mail server down")

            def overdue_detected(self, transaction):
                raise RuntimeError("mail server down")

        coordinator = CirculationCoordinator(db_manager, CirculationPolicy(), Broken(), now_fn=clock)
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        coordinator.reserve(actor, "BK003", "STU001")
        coordinator.return_by_barcode(actor, "BC201")

        assert coordinator.scan_lookup(actor, "BC201").held_for_student_id == "STU001"


class TestFines:
    @pytest.fixture
    def late_return(self, coordinator, actor, clock):
        transaction = coordinator.borrow_by_barcode(actor, "BC001", "STU001")
        clock.current = transaction.due_date + timedelta(days=4)
        return coordinator.return_by_barcode(actor, "BC001")

    def test_pay(self, coordinator, actor, late_return):
        fine = coordinator.pay_fine(actor, late_return.id)
        assert fine.paid
        assert fine.status == "paid"
        assert fine.amount == 200.0
        assert coordinator.unpaid_fines(actor, "STU001") == 0
        assert coordinator.list_unpaid_fines(actor, "STU001").items == []

        with pytest.raises(InvalidStateError) as exc_info:
            coordinator.waive_fine(actor, late_return.id, "Goodwill")
        assert exc_info.value.state == StateCode.FINE_SETTLED

    def test_unpaid_list(self, coordinator, actor, late_return):
        unpaid = coordinator.list_unpaid_fines(actor, "STU001")
        assert unpaid.total == 1
        assert unpaid.items[0].id == late_return.id
        assert unpaid.items[0].status == "unpaid"
        assert coordinator.unpaid_fines(actor, "STU001") == 200.0

    def test_waive_requires_reason(self, coordinator, actor, late_return):
        with pytest.raises(PolicyViolationError) as exc_info:
            coordinator.waive_fine(actor, late_return.id, "   ")
        assert violation_of(exc_info) == ViolationCode.WAIVE_REASON_REQUIRED

        fine = coordinator.waive_fine(actor, late_return.id, "Hospital stay")
        assert fine.waived
        assert fine.waive_reason == "Hospital stay"

    def test_active_loan_fine_is_not_final(self, coordinator, actor, clock):
        transaction = coordinator.borrow_by_barcode(actor, "BC002", "STU002")
        clock.advance(days=20)

        fine = coordinator.get_fine(actor, transaction.id)
        assert not fine.is_final
        assert fine.status == "accruing"
        assert fine.amount == 300.0
        with pytest.raises(InvalidStateError) as exc_info:
            coordinator.pay_fine(actor, transaction.id)
        assert exc_info.value.state == StateCode.FINE_NOT_FINAL

    def test_on_time_return_has_no_fine(self, coordinator, actor):
        transaction = coordinator.borrow_by_barcode(actor, "BC002", "STU002")
        coordinator.return_by_barcode(actor, "BC002")
        with pytest.raises(InvalidStateError) as exc_info:
            coordinator.pay_fine(actor, transaction.id)
        assert exc_info.value.state == StateCode.NO_FINE

    def test_bulk_pay_reports_failures(self, coordinator, actor, late_return):
        lost = coordinator.borrow_by_barcode(actor, "BC101", "STU002")
        coordinator.report_lost(actor, lost.id)

        result = coordinator.pay_fines(actor, [late_return.id, lost.id, 9999])
        assert [fine.id for fine in result.settled] == [late_return.id, lost.id]
        assert result.total_amount == 1000.0
        assert list(result.failed) == [9999]

    def test_statistics(self, coordinator, actor, late_return):
        lost = coordinator.borrow_by_barcode(actor, "BC101", "STU002")
        coordinator.report_lost(actor, lost.id)
        coordinator.waive_fine(actor, late_return.id, "First offence")

        stats = coordinator.fine_statistics(actor)
        assert stats.total_assessed == 1000.0
        assert stats.total_waived == 200.0
        assert stats.total_outstanding == 800.0
        assert stats.count_outstanding == 1
        assert stats.students_with_outstanding == 1


class TestCopies:
    def test_add_copy_goes_to_waiting_student(self, coordinator, actor, notifier):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        coordinator.reserve(actor, "BK003", "STU001")

        copy = coordinator.add_copy(actor, "BK003", "BC202")
        assert copy.copy_number == "2"
        assert copy.status == CopyStatusEnum.RESERVED
        assert notifier.ready[0].copy_id == copy.id

    def test_retire_and_restore(self, coordinator, actor):
        retired = coordinator.retire_copy(actor, "BC002", CopyStatusEnum.MAINTENANCE)
        assert retired.status == CopyStatusEnum.MAINTENANCE
        inventory = coordinator.inventory(actor, "BK001")
        assert inventory.available == 1
        assert inventory.counts["maintenance"] == 1

        restored = coordinator.restore_copy(actor, "BC002")
        assert restored.status == CopyStatusEnum.AVAILABLE

    def test_borrowed_copy_cannot_be_retired(self, coordinator, actor):
        coordinator.borrow_by_barcode(actor, "BC001", "STU001")
        with pytest.raises(InvalidStateError) as exc_info:
            coordinator.retire_copy(actor, "BC001", CopyStatusEnum.LOST)
        assert exc_info.value.state == StateCode.COPY_NOT_RETIRABLE

    def test_retire_only_to_out_of_circulation_statuses(self, coordinator, actor):
        with pytest.raises(InvalidStateError):
            coordinator.retire_copy(actor, "BC001", CopyStatusEnum.BORROWED)

    def test_damaged_return_leaves_queue_waiting(self, coordinator, actor):
        coordinator.borrow_by_barcode(actor, "BC201", "STU004")
        coordinator.reserve(actor, "BK003", "STU001")

        coordinator.return_by_barcode(actor, "BC201", condition=CopyConditionEnum.DAMAGED)
        position = coordinator.queue_position(actor, "BK003", "STU001")
        assert position.status == ReservationStatusEnum.PENDING
        assert coordinator.scan_lookup(actor, "BC201").book_copy.status == CopyStatusEnum.DAMAGED
