from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from ..constants import DAYS_PER_MONTH, TIER_30_60_DAYS, TIER_60_90_DAYS, TIER_90_PLUS_DAYS
from ..core.errors import DataIntegrityError

if TYPE_CHECKING:
    from .ledger import UnitLedgerStore

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    CURRENT = "current"
    PENDING = "pending"
    TIER_30_60 = "tier_30_60"
    TIER_60_90 = "tier_60_90"
    TIER_90_PLUS = "tier_90_plus"
    ATTORNEY = "attorney"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    @classmethod
    def parse(cls, value: Optional[str]) -> "LifecycleState":
        """Raises ``ValueError`` for a stored status that is neither current nor a legacy spelling."""
        if not value:
            return cls.CURRENT
        cleaned = value.strip().lower()
        if cleaned in _LEGACY_STATUS_NAMES:
            return _LEGACY_STATUS_NAMES[cleaned]
        return cls(cleaned)


_STATE_ORDER = [
    LifecycleState.CURRENT,
    LifecycleState.PENDING,
    LifecycleState.TIER_30_60,
    LifecycleState.TIER_60_90,
    LifecycleState.TIER_90_PLUS,
    LifecycleState.ATTORNEY,
]

# Status values written by the earlier collections system.
_LEGACY_STATUS_NAMES = {
    "30-60days": LifecycleState.TIER_30_60,
    "60-90days": LifecycleState.TIER_60_90,
    "90plus": LifecycleState.TIER_90_PLUS,
}


@dataclass(frozen=True)
class UnitFinancialSnapshot:
    unit_id: int
    total_owed: Decimal
    monthly_charge: Decimal
    current_status: LifecycleState
    contact_email: Optional[str] = None
    unit_number: str = ""
    owner_name: str = ""
    contact_phone: Optional[str] = None
    maintenance_balance: Decimal = Decimal("0")
    assessment_balance: Decimal = Decimal("0")
    late_fee_balance: Decimal = Decimal("0")
    last_payment_at: Optional[datetime] = None
    status_error: Optional[str] = None

    @property
    def label(self) -> str:
        return self.unit_number or str(self.unit_id)


@dataclass(frozen=True)
class EscalationEvent:
    unit_id: int
    previous_state: LifecycleState
    new_state: LifecycleState
    days_delinquent: int
    amount_owed: Decimal
    cycle_timestamp: datetime

    @property
    def is_recovery(self) -> bool:
        return self.new_state.rank < self.previous_state.rank


def days_delinquent_for(snapshot: UnitFinancialSnapshot) -> int:
    """Approximate days behind from the balance, counting whole monthly charges as 30 days each."""
    total_owed = Decimal(snapshot.total_owed)
    if total_owed <= 0:
        return 0
    monthly_charge = Decimal(snapshot.monthly_charge)
    if monthly_charge <= 0:
        raise DataIntegrityError(
            snapshot.unit_id, f"monthly charge must be positive to classify a balance (got {monthly_charge})"
        )
    months_behind = int(total_owed // monthly_charge)
    return months_behind * DAYS_PER_MONTH


def classify(snapshot: UnitFinancialSnapshot) -> Tuple[int, LifecycleState]:
    if snapshot.status_error:
        raise DataIntegrityError(snapshot.unit_id, snapshot.status_error)
    days = days_delinquent_for(snapshot)
    if Decimal(snapshot.total_owed) <= 0:
        return 0, LifecycleState.CURRENT
    if days >= TIER_90_PLUS_DAYS:
        return days, LifecycleState.TIER_90_PLUS
    if days >= TIER_60_90_DAYS:
        return days, LifecycleState.TIER_60_90
    if days >= TIER_30_60_DAYS:
        return days, LifecycleState.TIER_30_60
    return days, LifecycleState.PENDING


class StatusTransitionApplier:
    """Persists computed lifecycle states and emits one event per real transition."""

    def __init__(self, store: "UnitLedgerStore", *, auto_attorney_referral: bool = False) -> None:
        self._store = store
        self._auto_attorney_referral = auto_attorney_referral

    def apply(
        self,
        previous_state: LifecycleState,
        computed_state: LifecycleState,
        unit_id: int,
        *,
        days_delinquent: int = 0,
        amount_owed: Decimal = Decimal("0"),
        cycle_timestamp: Optional[datetime] = None,
    ) -> Optional[EscalationEvent]:
        if previous_state == LifecycleState.ATTORNEY:
            # Leaving the attorney tier requires an explicit board override.
            return None

        new_state = computed_state
        if self._auto_attorney_referral and computed_state == LifecycleState.TIER_90_PLUS:
            new_state = LifecycleState.ATTORNEY

        if new_state == previous_state:
            return None

        self._store.update_unit_status(unit_id, new_state)
        event = EscalationEvent(
            unit_id=unit_id,
            previous_state=previous_state,
            new_state=new_state,
            days_delinquent=days_delinquent,
            amount_owed=Decimal(amount_owed),
            cycle_timestamp=cycle_timestamp or datetime.now(timezone.utc),
        )
        logger.info(
            "Unit %s delinquency status %s -> %s (%s days, owed %s)",
            unit_id,
            previous_state.value,
            new_state.value,
            days_delinquent,
            event.amount_owed,
        )
        return event
