import sys
from collections.abc import Callable, Generator
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from condo_collections.config import Base, settings  # noqa: E402
import condo_collections.config as app_config  # noqa: E402
# Import the full models module so all tables register with Base metadata.
from condo_collections.models import models as _all_models  # noqa: E402,F401
from condo_collections.models.models import Role, Unit, User  # noqa: E402
from condo_collections.core.errors import LedgerUnavailableError, LedgerWriteError  # noqa: E402
from condo_collections.services.delinquency import LifecycleState, UnitFinancialSnapshot  # noqa: E402
from condo_collections.services.email import DeliveryResult  # noqa: E402
from condo_collections.services.escalation import NoticeTier  # noqa: E402
from condo_collections.services.ledger import billing_period  # noqa: E402
from condo_collections.services.recipients import CycleRecipients  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Point the app-wide SessionLocal/engine at a throwaway DB with all tables."""
    db_dir = tmp_path_factory.mktemp("globaldb")
    engine = create_engine(f"sqlite:///{db_dir / 'app.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    app_config.SessionLocal = sessionmaker(bind=engine)
    app_config.engine = engine
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def _isolate_email(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "email_backend", "local")
    monkeypatch.setattr(settings, "email_output_dir", str(tmp_path / "emails"))
    monkeypatch.setattr(settings, "transport_retry_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "board_email", "board@example.com")
    monkeypatch.setattr(settings, "attorney_email", "counsel@example.com")
    monkeypatch.setattr(settings, "auto_attorney_referral", False)


@pytest.fixture
def db_session(tmp_path) -> Generator[Session, None, None]:
    """Provide a fresh SQLite database for each test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def create_role(db_session: Session) -> Callable[[str], Role]:
    def _create(name: str) -> Role:
        existing = db_session.query(Role).filter(Role.name == name).first()
        if existing:
            return existing
        role = Role(name=name)
        db_session.add(role)
        db_session.commit()
        return role

    return _create


@pytest.fixture
def create_user(db_session: Session, create_role: Callable[[str], Role]) -> Callable[..., User]:
    def _create(email: str = "user@example.com", role_name: str = "BOARD", full_name: Optional[str] = None) -> User:
        role = create_role(role_name)
        user = User(email=email, full_name=full_name)
        user.roles.append(role)
        db_session.add(user)
        db_session.commit()
        return user

    return _create


@pytest.fixture
def create_unit(db_session: Session) -> Callable[..., Unit]:
    counter = {"value": 0}

    def _create(
        total_owed: str = "0",
        monthly_charge: str = "500",
        status: str = "current",
        email: Optional[str] = "owner@example.com",
        unit_number: Optional[str] = None,
    ) -> Unit:
        counter["value"] += 1
        unit = Unit(
            unit_number=unit_number or f"{100 + counter['value']}",
            owner_name=f"Owner {counter['value']}",
            contact_email=email,
            monthly_charge=Decimal(monthly_charge),
            maintenance_balance=Decimal(total_owed),
            total_owed=Decimal(total_owed),
            delinquency_status=status,
        )
        db_session.add(unit)
        db_session.commit()
        return unit

    return _create


@dataclass
class SentMessage:
    recipient: str
    subject: str
    body: str
    cc: Tuple[str, ...]


class FakeTransport:
    def __init__(self) -> None:
        self.sent: List[SentMessage] = []
        self.failing_recipients: set = set()

    def send(self, recipient, subject, body, cc=None) -> DeliveryResult:
        if recipient in self.failing_recipients:
            return DeliveryResult(backend="fake", status_code=None, request_id=None, error="mailbox unavailable", attempts=3)
        self.sent.append(SentMessage(recipient, subject, body, tuple(cc or ())))
        return DeliveryResult(backend="fake", status_code=202, request_id=None, error=None)

    def to(self, recipient: str) -> List[SentMessage]:
        return [message for message in self.sent if message.recipient == recipient]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recipients() -> CycleRecipients:
    return CycleRecipients(board=("board@example.com",), attorney="counsel@example.com", attorney_name="Counsel")


@dataclass
class MemoryRecord:
    unit_id: int
    notice_tier: str
    period: str
    sent_at: datetime


class MemoryUnitLedger:
    """In-memory unit ledger store; status writes can be made to fail per unit."""

    def __init__(self, snapshots: List[UnitFinancialSnapshot]) -> None:
        self.snapshots: Dict[int, UnitFinancialSnapshot] = {snapshot.unit_id: snapshot for snapshot in snapshots}
        self.writes: List[Tuple[int, LifecycleState]] = []
        self.failing_writes: set = set()
        self.unavailable = False

    def get_all_unit_snapshots(self) -> List[UnitFinancialSnapshot]:
        if self.unavailable:
            raise LedgerUnavailableError("ledger offline")
        return list(self.snapshots.values())

    def update_unit_status(self, unit_id: int, new_state: LifecycleState) -> None:
        if unit_id in self.failing_writes:
            raise LedgerWriteError(unit_id, "disk full")
        self.writes.append((unit_id, new_state))
        self.snapshots[unit_id] = replace(self.snapshots[unit_id], current_status=new_state)

    def set_balance(self, unit_id: int, total_owed: str) -> None:
        self.snapshots[unit_id] = replace(self.snapshots[unit_id], total_owed=Decimal(total_owed))

    def status(self, unit_id: int) -> LifecycleState:
        return self.snapshots[unit_id].current_status


class MemoryNotificationLedger:
    def __init__(self) -> None:
        self.records: List[MemoryRecord] = []
        self.failing_lookups: set = set()

    def has_record(self, unit_id: int, tier: NoticeTier, period: Optional[str]) -> bool:
        if unit_id in self.failing_lookups:
            raise OperationalError("SELECT notification_records", {}, Exception("database is locked"))
        return any(
            record.unit_id == unit_id and record.notice_tier == tier.value and (period is None or record.period == period)
            for record in self.records
        )

    def write_record(self, unit_id: int, tier: NoticeTier, timestamp: datetime) -> None:
        self.records.append(MemoryRecord(unit_id, tier.value, billing_period(timestamp), timestamp))

    def records_for_unit(self, unit_id: int) -> List[MemoryRecord]:
        return [record for record in self.records if record.unit_id == unit_id]

    def tiers_for(self, unit_id: int) -> List[str]:
        return [record.notice_tier for record in self.records_for_unit(unit_id)]


class MemoryTrail:
    def __init__(self) -> None:
        self.events = []
        self.failing_units: set = set()

    def record_event(self, event) -> None:
        if event.unit_id in self.failing_units:
            raise OperationalError("INSERT INTO escalation_events", {}, Exception("disk I/O error"))
        self.events.append(event)


def make_snapshot(
    unit_id: int = 1,
    total_owed: str = "0",
    monthly_charge: str = "500",
    status: LifecycleState = LifecycleState.CURRENT,
    email: Optional[str] = "owner@example.com",
) -> UnitFinancialSnapshot:
    return UnitFinancialSnapshot(
        unit_id=unit_id,
        unit_number=f"{100 + unit_id}",
        owner_name=f"Owner {unit_id}",
        total_owed=Decimal(total_owed),
        monthly_charge=Decimal(monthly_charge),
        current_status=status,
        contact_email=email,
    )


@pytest.fixture
def snapshot_factory() -> Callable[..., UnitFinancialSnapshot]:
    return make_snapshot


@pytest.fixture
def memory_ledger_factory() -> Callable[[List[UnitFinancialSnapshot]], MemoryUnitLedger]:
    return MemoryUnitLedger


@pytest.fixture
def notification_ledger() -> MemoryNotificationLedger:
    return MemoryNotificationLedger()


@pytest.fixture
def trail() -> MemoryTrail:
    return MemoryTrail()
