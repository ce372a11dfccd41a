from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Any

from sqlalchemy import (
    String, Integer, Boolean, Float, Numeric, Text, DateTime, ForeignKey, Index, JSON, func, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from gigmarket.db.session import Base
from gigmarket.domain.states import (
    AccountType,
    ApplicationStatus,
    EarningStatus,
    JobEvent,
    JobStatus,
    NotificationType,
    PaymentStatus,
    PaymentType,
)

# Partial unique indexes: only live rows take part in the constraint
ACTIVE_APPLICATION = text("status IN ('pending', 'accepted')")
OPEN_CHARGE = text("type = 'payment' AND status = 'pending'")

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(10, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    account_type: Mapped[AccountType] = mapped_column(String, default=AccountType.WORKER, nullable=False)
    api_key: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Location
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    skills: Mapped[list[str]] = mapped_column(JSONType, default=list)

    # Payment gateway linkage
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    stripe_connect_account_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    stripe_connect_account_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)

    poster_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    worker_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=True)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.OPEN, index=True)

    # Pricing
    payment_type: Mapped[str] = mapped_column(String, nullable=False)  # fixed|hourly
    payment_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Location
    location: Mapped[str] = mapped_column(String, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    verify_location_to_start: Mapped[bool] = mapped_column(Boolean, default=True)

    date_needed: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    required_skills: Mapped[list[str]] = mapped_column(JSONType, default=list)
    equipment_provided: Mapped[bool] = mapped_column(Boolean, default=False)

    date_posted: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    applications: Mapped[list["Application"]] = relationship("Application", back_populates="job")
    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # Map/nearby queries filter open jobs by a lat/lng box
        Index("ix_jobs_open_geo", "status", "latitude", "longitude"),
    )


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("jobs.id"), index=True, nullable=False)
    worker_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    status: Mapped[ApplicationStatus] = mapped_column(String, default=ApplicationStatus.PENDING, index=True)

    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cover_letter: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    expected_duration: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    date_applied: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    job: Mapped["Job"] = relationship("Job", back_populates="applications")

    __table_args__ = (
        Index("ix_applications_job_worker", "job_id", "worker_id"),
        # At most one pending or accepted application per worker per job
        Index(
            "uq_applications_active_job_worker", "job_id", "worker_id",
            unique=True,
            postgresql_where=ACTIVE_APPLICATION,
            sqlite_where=ACTIVE_APPLICATION,
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    worker_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=True)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("jobs.id"), index=True, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    service_fee: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    type: Mapped[PaymentType] = mapped_column(String, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(String, default=PaymentStatus.PENDING, index=True)

    transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    stripe_connect_account_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One open charge per payer per job
        Index(
            "uq_payments_open_charge", "job_id", "payer_id",
            unique=True,
            postgresql_where=OPEN_CHARGE,
            sqlite_where=OPEN_CHARGE,
        ),
    )


class Earning(Base):
    __tablename__ = "earnings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    worker_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("jobs.id"), index=True, nullable=True)
    payment_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("payments.id"), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[EarningStatus] = mapped_column(String, default=EarningStatus.PENDING, index=True)

    transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    date_earned: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    date_paid: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One earning per worker per job
        Index("ix_earnings_job_worker", "job_id", "worker_id", unique=True),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(String, nullable=False)
    source_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("jobs.id"), nullable=True)
    sender_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    recipient_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (e.g. from/to status, payment id, gateway error)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
