from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Session statuses that occupy a psychologist's slot
ACTIVE_SESSION_STATUSES = ("booked", "rescheduled", "confirmed", "reschedule_requested")
CANCELLED_SESSION_STATUS = "cancelled"

# Slot lock lifecycle
LOCK_SLOT_HELD = "SLOT_HELD"
LOCK_PAYMENT_PENDING = "PAYMENT_PENDING"
LOCK_PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
LOCK_SESSION_CREATED = "SESSION_CREATED"
LOCK_FAILED = "FAILED"
LOCK_EXPIRED = "EXPIRED"
ACTIVE_LOCK_STATUSES = (LOCK_SLOT_HELD, LOCK_PAYMENT_PENDING, LOCK_PAYMENT_SUCCESS)
TERMINAL_LOCK_STATUSES = (LOCK_SESSION_CREATED, LOCK_FAILED, LOCK_EXPIRED)

# Payment statuses
PAYMENT_PENDING = "pending"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"

# Credit lifecycle for captured payments that could not be attached to a session
CREDIT_AVAILABLE = "available"
CREDIT_CONSUMED = "consumed"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _active_sql_list(statuses) -> str:
    return ", ".join(f"'{s}'" for s in statuses)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    firebase_uid = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default="client", nullable=False)  # client, psychologist, admin
    created_at = Column(DateTime, server_default=func.now())


class Psychologist(Base):
    __tablename__ = "psychologists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    # Price for a single session outside any package; bookings fail until configured
    individual_session_price = Column(Float, nullable=True)
    # Fernet-encrypted JSON blob: access_token, refresh_token, expires_at
    google_calendar_credentials = Column(Text, nullable=True)
    google_calendar_id = Column(String(255), default="primary", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    packages = relationship("Package", back_populates="psychologist")
    sessions = relationship("TherapySession", back_populates="psychologist")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=True)
    email = Column(String(255), index=True, nullable=True)
    phone_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    sessions = relationship("TherapySession", back_populates="client")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Package(Base):
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    package_type = Column(String(50), nullable=True)  # e.g. "3_sessions"
    price = Column(Float, nullable=False)
    session_count = Column(Integer, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    psychologist = relationship("Psychologist", back_populates="packages")


class Availability(Base):
    __tablename__ = "availability"
    __table_args__ = (
        UniqueConstraint("psychologist_id", "date", name="uq_availability_psychologist_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    time_slots = Column(JSON, default=list, nullable=False)  # ordered "HH:MM" strings still open
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class TherapySession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        # At most one session per slot may hold it at any time
        Index(
            "uq_sessions_active_slot",
            "psychologist_id",
            "scheduled_date",
            "scheduled_time",
            unique=True,
            postgresql_where=text(f"status IN ({_active_sql_list(ACTIVE_SESSION_STATUSES)})"),
            sqlite_where=text(f"status IN ({_active_sql_list(ACTIVE_SESSION_STATUSES)})"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    client_package_id = Column(Integer, ForeignKey("client_packages.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)  # "HH:MM"
    status = Column(String(30), default="booked", nullable=False, index=True)
    session_type = Column(String(50), default="Individual Session", nullable=False)
    price = Column(Float, default=0, nullable=False)
    reschedule_count = Column(Integer, default=0, nullable=False)
    # Pending reschedule awaiting admin approval
    requested_date = Column(Date, nullable=True)
    requested_time = Column(String(5), nullable=True)
    google_calendar_event_id = Column(String(255), nullable=True)
    google_meet_link = Column(String(500), nullable=True)
    google_calendar_link = Column(String(500), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    psychologist = relationship("Psychologist", back_populates="sessions")
    client = relationship("Client", back_populates="sessions")
    package = relationship("Package")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(100), unique=True, index=True, nullable=False)
    gateway_payment_id = Column(String(100), unique=True, nullable=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    status = Column(String(20), default=PAYMENT_PENDING, nullable=False, index=True)
    # Set when a captured payment lost its slot: available until applied to another slot
    credit_status = Column(String(20), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    client = relationship("Client")
    psychologist = relationship("Psychologist")
    session = relationship("TherapySession")


class SlotLock(Base):
    __tablename__ = "slot_locks"
    __table_args__ = (
        Index(
            "uq_slot_locks_active_slot",
            "psychologist_id",
            "scheduled_date",
            "scheduled_time",
            unique=True,
            postgresql_where=text(f"status IN ({_active_sql_list(ACTIVE_LOCK_STATUSES)})"),
            sqlite_where=text(f"status IN ({_active_sql_list(ACTIVE_LOCK_STATUSES)})"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(100), unique=True, index=True, nullable=False)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    amount = Column(Float, nullable=False)
    status = Column(String(20), default=LOCK_SLOT_HELD, nullable=False, index=True)
    gateway_payment_id = Column(String(100), nullable=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ClientPackage(Base):
    __tablename__ = "client_packages"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    psychologist_id = Column(Integer, ForeignKey("psychologists.id"), nullable=False)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=False)
    # Session that purchased the package; makes record creation idempotent
    first_session_id = Column(Integer, unique=True, nullable=True)
    total_sessions = Column(Integer, nullable=False)
    remaining_sessions = Column(Integer, nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, completed
    purchased_at = Column(DateTime, default=utcnow, nullable=False)

    package = relationship("Package")

    @property
    def consumed_sessions(self) -> int:
        return self.total_sessions - self.remaining_sessions


class OutboxEvent(Base):
    """Side effect recorded in the same transaction as the booking change"""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSON, default=dict, nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, dispatched, failed
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)
