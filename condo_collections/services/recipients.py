from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Role, User, user_roles

logger = logging.getLogger(__name__)


class RecipientRole(str, Enum):
    BOARD = "BOARD"
    TREASURER = "TREASURER"
    SECRETARY = "SECRETARY"
    ATTORNEY = "ATTORNEY"


BOARD_DIGEST_ROLES = (RecipientRole.BOARD, RecipientRole.TREASURER, RecipientRole.SECRETARY)
ATTORNEY_ROLES = (RecipientRole.ATTORNEY,)


@dataclass(frozen=True)
class CycleRecipients:
    """Recipient addresses resolved once at the start of a collections cycle."""

    board: Tuple[str, ...] = ()
    attorney: Optional[str] = None
    attorney_name: str = "Association Counsel"
    board_cc: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def board_primary(self) -> Optional[str]:
        return self.board[0] if self.board else None


def _emails_for_roles(session: Session, roles: Iterable[RecipientRole]) -> List[Tuple[str, Optional[str]]]:
    role_names = [role.value for role in roles]
    query = (
        session.query(User.email, User.full_name)
        .join(user_roles, user_roles.c.user_id == User.id)
        .join(Role, Role.id == user_roles.c.role_id)
        .filter(Role.name.in_(role_names), User.is_active.is_(True))
        .distinct()
        .order_by(User.email.asc())
    )
    return [(email, full_name) for email, full_name in query if email]


def resolve_cycle_recipients(session: Optional[Session]) -> CycleRecipients:
    board: List[str] = []
    attorney: Optional[str] = None
    attorney_name = settings.attorney_name

    if session is not None:
        board = [email for email, _ in _emails_for_roles(session, BOARD_DIGEST_ROLES)]
        counsel = _emails_for_roles(session, ATTORNEY_ROLES)
        if counsel:
            attorney, counsel_name = counsel[0]
            attorney_name = counsel_name or attorney_name

    if not board and settings.board_email:
        board = [settings.board_email]
    if not attorney and settings.attorney_email:
        attorney = settings.attorney_email

    board_cc = (settings.board_cc_email,) if settings.board_cc_email else ()
    if not board:
        logger.warning("No board recipients configured; the collections digest cannot be delivered.")
    if not attorney:
        logger.warning("No attorney recipient configured; referrals will be recorded as failed.")
    return CycleRecipients(
        board=tuple(board),
        attorney=attorney,
        attorney_name=attorney_name,
        board_cc=board_cc,
    )
