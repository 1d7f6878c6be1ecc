from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aba.models import Base, utcnow
from app.aba.utils import iso, money


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("idx_invoices_client", "client_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_period", "start_date", "end_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # INV-2025-00001
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    adjustments: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    outstanding: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    view_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    client = relationship("Client", lazy="joined")
    created_by = relationship("User", foreign_keys=[created_by_user_id], lazy="joined")
    entries: Mapped[list["InvoiceEntry"]] = relationship(
        "InvoiceEntry",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by=lambda: [InvoiceEntry.service_date, InvoiceEntry.id],
        lazy="selectin",
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by=lambda: Payment.payment_date,
        lazy="selectin",
    )
    adjustment_records: Mapped[list["InvoiceAdjustment"]] = relationship(
        "InvoiceAdjustment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by=lambda: InvoiceAdjustment.created_at,
        lazy="selectin",
    )

    def to_dict(self, *, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "client_id": self.client_id,
            "client_name": self.client.name if self.client else None,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "total_amount": money(self.total_amount),
            "paid_amount": money(self.paid_amount),
            "adjustments": money(self.adjustments),
            "outstanding": money(self.outstanding),
            "status": self.status,
            "created_by": self.created_by.email if self.created_by else None,
            "sent_at": iso(self.sent_at),
            "notes": self.notes,
            "created_at": iso(self.created_at),
        }
        if include_lines:
            data["entries"] = [e.to_dict() for e in self.entries]
            data["payments"] = [p.to_dict() for p in self.payments]
            data["adjustment_records"] = [a.to_dict() for a in self.adjustment_records]
        return data


class InvoiceEntry(Base):
    __tablename__ = "invoice_entries"
    __table_args__ = (
        Index("idx_invoice_entries_invoice", "invoice_id"),
        Index("idx_invoice_entries_timesheet", "timesheet_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    timesheet_id: Mapped[int] = mapped_column(ForeignKey("timesheets.id", ondelete="RESTRICT"), nullable=False)
    timesheet_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("timesheet_entries.id", ondelete="SET NULL"), nullable=True
    )
    provider_id: Mapped[int | None] = mapped_column(ForeignKey("providers.id", ondelete="SET NULL"), nullable=True)
    insurance_id: Mapped[int | None] = mapped_column(ForeignKey("insurance.id", ondelete="SET NULL"), nullable=True)

    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    units: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    billable_units: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))  # snapshot
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    invoice: Mapped[Invoice] = relationship("Invoice", back_populates="entries")
    provider = relationship("Provider", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timesheet_id": self.timesheet_id,
            "timesheet_entry_id": self.timesheet_entry_id,
            "provider_id": self.provider_id,
            "provider_name": self.provider.name if self.provider else None,
            "service_date": iso(self.service_date),
            "notes": self.notes,
            "minutes": self.minutes,
            "units": str(self.units),
            "billable_units": str(self.billable_units),
            "rate": money(self.rate),
            "amount": money(self.amount),
        }


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (Index("idx_payments_invoice", "invoice_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    invoice: Mapped[Invoice] = relationship("Invoice", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": money(self.amount),
            "payment_date": iso(self.payment_date),
            "reference_number": self.reference_number,
            "notes": self.notes,
            "created_at": iso(self.created_at),
        }


class InvoiceAdjustment(Base):
    __tablename__ = "invoice_adjustments"
    __table_args__ = (Index("idx_invoice_adjustments_invoice", "invoice_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # signed
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    invoice: Mapped[Invoice] = relationship("Invoice", back_populates="adjustment_records")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": money(self.amount),
            "reason": self.reason,
            "created_at": iso(self.created_at),
        }


class ScheduledJobRun(Base):
    """One row per invoice-generation run (cron, CLI or manual)."""

    __tablename__ = "scheduled_job_runs"
    __table_args__ = (Index("idx_scheduled_job_runs_job_started", "job_name", "started_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoices_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clients_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
            "success": self.success,
            "period_start": iso(self.period_start),
            "period_end": iso(self.period_end),
            "period_label": self.period_label,
            "invoices_created": self.invoices_created,
            "clients_processed": self.clients_processed,
            "errors_json": self.errors_json,
        }
