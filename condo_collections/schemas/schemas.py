from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class EscalationEventRead(BaseModel):
    unit_id: int
    previous_state: str
    new_state: str
    days_delinquent: int
    amount_owed: Decimal
    cycle_timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class EscalationEventRecordRead(EscalationEventRead):
    id: int
    created_at: datetime


class DispatchResultRead(BaseModel):
    kind: str
    status: str
    unit_id: Optional[int] = None
    unit_number: Optional[str] = None
    notice_tier: Optional[str] = None
    recipient: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


class CycleSummaryRead(BaseModel):
    cycle_timestamp: datetime
    trigger: str
    delinquent_unit_count: int
    units_needing_action: int
    units_checked: int
    events: List[EscalationEventRead] = []
    owner_notices_sent: int
    attorney_referrals_sent: int
    board_alerts_sent: int
    failures: List[str] = []
    fatal_error: Optional[str] = None


class SchedulerStatusRead(BaseModel):
    running: bool
    current_trigger: Optional[str] = None
    started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_trigger: Optional[str] = None
    last_error: Optional[str] = None
    last_summary: Optional[CycleSummaryRead] = None
    next_run_at: Optional[datetime] = None
    scheduler_enabled: bool


class UnitCheckRead(BaseModel):
    unit_id: int
    unit_number: str
    owner_name: str
    contact_email: Optional[str] = None
    total_owed: Decimal
    days_delinquent: int
    current_status: str
    computed_status: str
    recommended_action: str
    notice_tier: Optional[str] = None


class NotificationRecordRead(BaseModel):
    id: int
    unit_id: int
    notice_tier: str
    period: str
    sent_at: datetime

    model_config = ConfigDict(from_attributes=True)
