from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base
from ..constants import ROLE_PRIORITY


def utcnow():
    return datetime.now(timezone.utc)


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime, default=utcnow, nullable=False),
)


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    description = Column(String, nullable=True)

    users = orm_relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    roles = orm_relationship("Role", secondary=user_roles, back_populates="users")
    audit_logs = orm_relationship("AuditLog", back_populates="actor")

    @property
    def role(self):
        if self.roles:
            return max(self.roles, key=lambda role: ROLE_PRIORITY.get(role.name, 0))
        return None


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    before = Column(Text, nullable=True)
    after = Column(Text, nullable=True)

    actor = orm_relationship("User", back_populates="audit_logs")


class Unit(Base):
    __tablename__ = "units"

    id = Column(Integer, primary_key=True, index=True)
    unit_number = Column(String, unique=True, nullable=False, index=True)
    owner_name = Column(String, nullable=False)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    mailing_address = Column(String, nullable=True)
    monthly_charge = Column(Numeric(10, 2), nullable=False)
    maintenance_balance = Column(Numeric(10, 2), nullable=False, default=0)
    assessment_balance = Column(Numeric(10, 2), nullable=False, default=0)
    late_fee_balance = Column(Numeric(10, 2), nullable=False, default=0)
    total_owed = Column(Numeric(10, 2), nullable=False, default=0)
    delinquency_status = Column(String, nullable=False, default="current", index=True)
    priority_level = Column(String, nullable=False, default="low")
    status_changed_at = Column(DateTime, nullable=True)
    last_payment_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    escalation_events = orm_relationship(
        "EscalationEventRecord", back_populates="unit", order_by="EscalationEventRecord.id"
    )
    notification_records = orm_relationship("NotificationRecord", back_populates="unit")


class EscalationEventRecord(Base):
    __tablename__ = "escalation_events"

    id = Column(Integer, primary_key=True, index=True)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=False, index=True)
    previous_state = Column(String, nullable=False)
    new_state = Column(String, nullable=False)
    days_delinquent = Column(Integer, nullable=False, default=0)
    amount_owed = Column(Numeric(10, 2), nullable=False)
    cycle_timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    unit = orm_relationship("Unit", back_populates="escalation_events")


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (Index("ix_notification_records_unit_tier_period", "unit_id", "notice_tier", "period"),)

    id = Column(Integer, primary_key=True, index=True)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=False)
    notice_tier = Column(String, nullable=False)
    period = Column(String, nullable=False)
    sent_at = Column(DateTime, nullable=False)

    unit = orm_relationship("Unit", back_populates="notification_records")


class DispatchLog(Base):
    __tablename__ = "dispatch_logs"

    id = Column(Integer, primary_key=True, index=True)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=True, index=True)
    kind = Column(String, nullable=False)
    notice_tier = Column(String, nullable=True)
    recipient = Column(String, nullable=True)
    status = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    cycle_timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
