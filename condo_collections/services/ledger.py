from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..constants import PRIORITY_BY_STATE
from ..core.errors import LedgerUnavailableError, LedgerWriteError
from ..models.models import EscalationEventRecord, NotificationRecord, Unit
from .delinquency import EscalationEvent, LifecycleState, UnitFinancialSnapshot
from .escalation import NoticeTier

logger = logging.getLogger(__name__)


def billing_period(timestamp: datetime) -> str:
    """Billing periods are calendar months, keyed ``YYYY-MM``."""
    return f"{timestamp.year:04d}-{timestamp.month:02d}"


def _as_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class UnitLedgerStore(Protocol):
    def get_all_unit_snapshots(self) -> List[UnitFinancialSnapshot]: ...

    def update_unit_status(self, unit_id: int, new_state: LifecycleState) -> None: ...


class NotificationLedger(Protocol):
    def has_record(self, unit_id: int, tier: NoticeTier, period: Optional[str]) -> bool: ...

    def write_record(self, unit_id: int, tier: NoticeTier, timestamp: datetime) -> None: ...

    def records_for_unit(self, unit_id: int) -> List[NotificationRecord]: ...


class EscalationTrail(Protocol):
    def record_event(self, event: EscalationEvent) -> None: ...


def snapshot_from_unit(unit: Unit) -> UnitFinancialSnapshot:
    status_error = None
    try:
        current_status = LifecycleState.parse(unit.delinquency_status)
    except ValueError:
        # Classification rejects the unit; the rest of the ledger is still read.
        current_status = LifecycleState.CURRENT
        status_error = f"unrecognised delinquency status {unit.delinquency_status!r}"
        logger.warning("Unit %s has %s.", unit.unit_number or unit.id, status_error)
    return UnitFinancialSnapshot(
        unit_id=unit.id,
        unit_number=unit.unit_number,
        owner_name=unit.owner_name,
        total_owed=_as_decimal(unit.total_owed),
        monthly_charge=_as_decimal(unit.monthly_charge),
        current_status=current_status,
        status_error=status_error,
        contact_email=(unit.contact_email or "").strip() or None,
        contact_phone=unit.contact_phone,
        maintenance_balance=_as_decimal(unit.maintenance_balance),
        assessment_balance=_as_decimal(unit.assessment_balance),
        late_fee_balance=_as_decimal(unit.late_fee_balance),
        last_payment_at=unit.last_payment_at,
    )


class SqlUnitLedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_all_unit_snapshots(self) -> List[UnitFinancialSnapshot]:
        try:
            units = self.session.query(Unit).order_by(Unit.unit_number.asc()).all()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise LedgerUnavailableError(f"Unable to read unit ledger: {exc}") from exc
        return [snapshot_from_unit(unit) for unit in units]

    def update_unit_status(self, unit_id: int, new_state: LifecycleState) -> None:
        try:
            unit = self.session.get(Unit, unit_id)
            if unit is None:
                raise LedgerWriteError(unit_id, "unit no longer exists")
            unit.delinquency_status = new_state.value
            unit.priority_level = PRIORITY_BY_STATE[new_state.value]
            unit.status_changed_at = datetime.now(timezone.utc)
            self.session.add(unit)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise LedgerWriteError(unit_id, f"status update to {new_state.value} failed: {exc}") from exc


class SqlNotificationLedger:
    def __init__(self, session: Session) -> None:
        self.session = session

    def has_record(self, unit_id: int, tier: NoticeTier, period: Optional[str]) -> bool:
        query = self.session.query(NotificationRecord.id).filter(
            NotificationRecord.unit_id == unit_id,
            NotificationRecord.notice_tier == tier.value,
        )
        if period is not None:
            query = query.filter(NotificationRecord.period == period)
        try:
            return query.first() is not None
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def write_record(self, unit_id: int, tier: NoticeTier, timestamp: datetime) -> None:
        record = NotificationRecord(
            unit_id=unit_id,
            notice_tier=tier.value,
            period=billing_period(timestamp),
            sent_at=timestamp,
        )
        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def records_for_unit(self, unit_id: int) -> List[NotificationRecord]:
        try:
            return (
                self.session.query(NotificationRecord)
                .filter(NotificationRecord.unit_id == unit_id)
                .order_by(NotificationRecord.sent_at.asc(), NotificationRecord.id.asc())
                .all()
            )
        except SQLAlchemyError:
            self.session.rollback()
            raise


class SqlEscalationTrail:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(self, event: EscalationEvent) -> None:
        try:
            self.session.add(
                EscalationEventRecord(
                    unit_id=event.unit_id,
                    previous_state=event.previous_state.value,
                    new_state=event.new_state.value,
                    days_delinquent=event.days_delinquent,
                    amount_owed=event.amount_owed,
                    cycle_timestamp=event.cycle_timestamp,
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
