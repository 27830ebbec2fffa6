from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from ..constants import RECOMMENDED_ACTIONS
from .delinquency import EscalationEvent, LifecycleState, UnitFinancialSnapshot


class NoticeTier(str, Enum):
    DAY_30 = "30_day"
    DAY_60 = "60_day"
    DAY_90 = "90_day"
    ATTORNEY = "attorney"


@dataclass(frozen=True)
class ActionSet:
    owner_notice_tier: Optional[NoticeTier] = None
    board_alert_required: bool = False
    attorney_referral_required: bool = False
    recovered: bool = False
    renotify: bool = False

    @property
    def needs_action(self) -> bool:
        return bool(self.owner_notice_tier or self.board_alert_required or self.attorney_referral_required)


NO_ACTION = ActionSet()

_ACTIONS_BY_STATE: Dict[LifecycleState, ActionSet] = {
    LifecycleState.PENDING: ActionSet(owner_notice_tier=NoticeTier.DAY_30),
    LifecycleState.TIER_30_60: ActionSet(owner_notice_tier=NoticeTier.DAY_60, board_alert_required=True),
    LifecycleState.TIER_60_90: ActionSet(owner_notice_tier=NoticeTier.DAY_90, board_alert_required=True),
    LifecycleState.TIER_90_PLUS: ActionSet(board_alert_required=True, attorney_referral_required=True),
    LifecycleState.ATTORNEY: ActionSet(board_alert_required=True, attorney_referral_required=True),
}


def actions_for_state(state: LifecycleState) -> ActionSet:
    return _ACTIONS_BY_STATE.get(state, NO_ACTION)


def notice_tier_for_state(state: LifecycleState) -> Optional[NoticeTier]:
    """The tier whose NotificationRecord marks a unit in ``state`` as notified."""
    action = actions_for_state(state)
    if action.owner_notice_tier:
        return action.owner_notice_tier
    if action.attorney_referral_required:
        return NoticeTier.ATTORNEY
    return None


def policy_for(event: EscalationEvent) -> ActionSet:
    if event.is_recovery:
        # Recoveries still reach the board digest.
        return ActionSet(recovered=True)
    return actions_for_state(event.new_state)


def renotify_action(state: LifecycleState, has_record_this_period: bool) -> ActionSet:
    """Same-tier action for an unchanged unit whose notice never landed this billing period."""
    if has_record_this_period or state == LifecycleState.ATTORNEY:
        return NO_ACTION
    action = actions_for_state(state)
    if not action.needs_action:
        return NO_ACTION
    return ActionSet(
        owner_notice_tier=action.owner_notice_tier,
        board_alert_required=action.board_alert_required,
        attorney_referral_required=action.attorney_referral_required,
        renotify=True,
    )


@dataclass(frozen=True)
class UnitAssessment:
    """One unit's standing after classification and transition in a cycle."""

    snapshot: UnitFinancialSnapshot
    days_delinquent: int
    state: LifecycleState
    action: ActionSet = NO_ACTION
    event: Optional[EscalationEvent] = None

    @property
    def is_delinquent(self) -> bool:
        return self.snapshot.total_owed > 0

    @property
    def needs_action(self) -> bool:
        return self.is_delinquent and self.state not in (LifecycleState.CURRENT, LifecycleState.ATTORNEY)

    @property
    def recommended_action(self) -> str:
        return RECOMMENDED_ACTIONS[self.state.value]
