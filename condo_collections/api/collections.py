from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..api.dependencies import get_db, get_scheduler
from ..config import settings
from ..models.models import EscalationEventRecord, NotificationRecord
from ..schemas.schemas import (
    CycleSummaryRead,
    EscalationEventRead,
    EscalationEventRecordRead,
    NotificationRecordRead,
    SchedulerStatusRead,
    UnitCheckRead,
)
from ..services.delinquency import EscalationEvent
from ..services.escalation import notice_tier_for_state
from ..services.ledger import SqlUnitLedgerStore
from ..services.pipeline import CycleSummary, check_units, summary_payload
from ..services.scheduler import CollectionScheduler

router = APIRouter()


def _event_read(event: EscalationEvent) -> EscalationEventRead:
    return EscalationEventRead(
        unit_id=event.unit_id,
        previous_state=event.previous_state.value,
        new_state=event.new_state.value,
        days_delinquent=event.days_delinquent,
        amount_owed=event.amount_owed,
        cycle_timestamp=event.cycle_timestamp,
    )


def serialize_summary(summary: CycleSummary) -> CycleSummaryRead:
    payload = summary_payload(summary)
    payload["events"] = [_event_read(event) for event in summary.events]
    return CycleSummaryRead(**payload)


@router.post("/trigger", response_model=CycleSummaryRead)
def trigger_collections_cycle(scheduler: CollectionScheduler = Depends(get_scheduler)) -> CycleSummaryRead:
    """Run the collections cycle now; 409 when one is already in progress."""
    summary = scheduler.trigger_manual()
    return serialize_summary(summary)


@router.get("/status", response_model=SchedulerStatusRead)
def read_scheduler_status(scheduler: CollectionScheduler = Depends(get_scheduler)) -> SchedulerStatusRead:
    state = scheduler.state
    return SchedulerStatusRead(
        running=state.phase.value == "running",
        current_trigger=state.current_trigger,
        started_at=state.started_at,
        last_finished_at=state.last_finished_at,
        last_trigger=state.last_trigger,
        last_error=state.last_error,
        last_summary=serialize_summary(state.last_summary) if state.last_summary else None,
        next_run_at=scheduler.next_run_at() if scheduler.loop_active else None,
        scheduler_enabled=settings.collections_scheduler_enabled,
    )


@router.get("/check", response_model=List[UnitCheckRead])
def check_delinquent_units(db: Session = Depends(get_db)) -> List[UnitCheckRead]:
    assessments = check_units(SqlUnitLedgerStore(db))
    checks: List[UnitCheckRead] = []
    for item in assessments:
        if not item.needs_action:
            continue
        tier = notice_tier_for_state(item.state)
        checks.append(
            UnitCheckRead(
                unit_id=item.snapshot.unit_id,
                unit_number=item.snapshot.unit_number,
                owner_name=item.snapshot.owner_name,
                contact_email=item.snapshot.contact_email,
                total_owed=item.snapshot.total_owed,
                days_delinquent=item.days_delinquent,
                current_status=item.snapshot.current_status.value,
                computed_status=item.state.value,
                recommended_action=item.recommended_action,
                notice_tier=tier.value if tier else None,
            )
        )
    return checks


@router.get("/events", response_model=List[EscalationEventRecordRead])
def list_escalation_events(
    unit_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> List[EscalationEventRecord]:
    query = db.query(EscalationEventRecord)
    if unit_id is not None:
        query = query.filter(EscalationEventRecord.unit_id == unit_id)
    return query.order_by(EscalationEventRecord.id.desc()).limit(limit).all()


@router.get("/notifications", response_model=List[NotificationRecordRead])
def list_notification_records(
    unit_id: Optional[int] = None,
    period: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> List[NotificationRecord]:
    query = db.query(NotificationRecord)
    if unit_id is not None:
        query = query.filter(NotificationRecord.unit_id == unit_id)
    if period:
        query = query.filter(NotificationRecord.period == period)
    return query.order_by(NotificationRecord.id.desc()).limit(limit).all()
