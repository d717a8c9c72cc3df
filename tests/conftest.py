"""Test configuration and fixtures for the Circulation MCP Server.

1. Isolated databases - each test gets its own SQLite file
2. A controllable clock - due dates, fines and hold windows without sleeping
3. Seeded catalog - titles, barcoded copies and students in known states
4. A coordinator wired to all of the above and installed for the MCP handlers
"""

from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path

import logfire
import pytest
from sqlalchemy.orm import Session

from circulation_mcp.auth import ActorContext
from circulation_mcp.config import ALL_PERMISSIONS, CirculationPolicy, reset_config
from circulation_mcp.coordinator import CirculationCoordinator, set_coordinator
from circulation_mcp.database.schema import Book, BookCopy, Student
from circulation_mcp.database.session import DatabaseManager, set_db_manager
from circulation_mcp.models.enums import StudentStatusEnum

START = datetime(2024, 3, 1, 10, 0, 0)


def pytest_configure(config):
    """Keep logfire local for the whole run."""
    logfire.configure(send_to_logfire=False, console=False)
    config.addinivalue_line("markers", "concurrency: tests driving the coordinator from threads")


class FakeClock:
    """Callable clock; tests move it forward explicitly."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    def __init__(self):
        self.ready = []
        self.overdue = []

    def reservation_ready(self, reservation) -> None:
        self.ready.append(reservation)

    def overdue_detected(self, transaction) -> None:
        self.overdue.append(transaction)


# === Environment and configuration ===


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch) -> Generator[None, None, None]:
    """Point the global configuration at a throwaway database path."""
    monkeypatch.setenv("CIRCULATION_DATABASE_PATH", str(tmp_path / "config.db"))
    monkeypatch.setenv("CIRCULATION_TERMINAL_ACTOR_ID", "desk-test")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> CirculationPolicy:
    return CirculationPolicy()


# === Database ===


@pytest.fixture
def db_manager(tmp_path: Path) -> Generator[DatabaseManager, None, None]:
    """A file-backed database so several threads can share it."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'circulation.db'}")
    manager.init_database()
    set_db_manager(manager)
    yield manager
    set_db_manager(None)


@pytest.fixture
def seeded(db_manager: DatabaseManager) -> dict[str, int]:
    """
    Seed the catalog. Returns copy ids keyed by barcode.

    - BK001: two copies (BC001, BC002), global fine rate
    - BK002: one copy (BC101), 10.00 per day, replacement cost 800.00
    - BK003: one copy (BC201)
    - STU001-STU004 active with a limit of 5, STU005 suspended, STU006 at its limit of 1
    """
    with db_manager.session_scope() as session:
        session.add_all(
            [
                Book(id="BK001", title="Clean Code", author="Robert C. Martin", isbn="9780132350884"),
                Book(
                    id="BK002",
                    title="Designing Data-Intensive Applications",
                    author="Martin Kleppmann",
                    isbn="9781449373320",
                    fine_per_day=10.0,
                    replacement_cost=800.0,
                ),
                Book(id="BK003", title="The Pragmatic Programmer", author="Hunt and Thomas"),
            ]
        )
        session.flush()
        session.add_all(
            [
                BookCopy(book_id="BK001", copy_number="1", barcode="BC001"),
                BookCopy(book_id="BK001", copy_number="2", barcode="BC002"),
                BookCopy(book_id="BK002", copy_number="1", barcode="BC101"),
                BookCopy(book_id="BK003", copy_number="1", barcode="BC201"),
            ]
        )
        session.add_all(
            [
                Student(id="STU001", name="Ada Lovelace", max_books=5),
                Student(id="STU002", name="Alan Turing", max_books=5),
                Student(id="STU003", name="Grace Hopper", max_books=5),
                Student(id="STU004", name="Edsger Dijkstra", max_books=5),
                Student(
                    id="STU005",
                    name="Kim Suspended",
                    status=StudentStatusEnum.SUSPENDED,
                    suspension_reason="Library conduct",
                ),
                Student(id="STU006", name="Sam Limit", max_books=1, current_books=1),
            ]
        )
        session.flush()
        copies = {
            copy.barcode: copy.id for copy in session.query(BookCopy).order_by(BookCopy.id).all()
        }
    return copies


@pytest.fixture
def session(db_manager: DatabaseManager, seeded) -> Generator[Session, None, None]:
    """A session over the seeded database; uncommitted work is discarded."""
    session = db_manager.create_session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# === Actors and coordinator ===


@pytest.fixture
def actor() -> ActorContext:
    return ActorContext(actor_id="desk-1", permissions=frozenset(ALL_PERMISSIONS))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def coordinator(
    db_manager: DatabaseManager, seeded, policy, clock, notifier
) -> Generator[CirculationCoordinator, None, None]:
    coordinator = CirculationCoordinator(
        db_manager=db_manager, policy=policy, notifier=notifier, now_fn=clock
    )
    set_coordinator(coordinator)
    yield coordinator
    set_coordinator(None)
