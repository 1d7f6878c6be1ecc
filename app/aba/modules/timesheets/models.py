from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aba.models import Base, utcnow
from app.aba.utils import iso


class Timesheet(Base):
    __tablename__ = "timesheets"
    __table_args__ = (
        Index("idx_timesheets_user", "user_id"),
        Index("idx_timesheets_client", "client_id"),
        Index("idx_timesheets_status", "status"),
        Index("idx_timesheets_dates", "start_date", "end_date"),
        Index("idx_timesheets_invoice", "invoice_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timesheet_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # T-1001 / BT-1001

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    provider_id: Mapped[int | None] = mapped_column(ForeignKey("providers.id", ondelete="RESTRICT"), nullable=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    bcba_id: Mapped[int] = mapped_column(ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False)
    insurance_id: Mapped[int] = mapped_column(ForeignKey("insurance.id", ondelete="RESTRICT"), nullable=False)

    is_bcba: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    emailed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    invoiced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    user = relationship("User", foreign_keys=[user_id], lazy="joined")
    provider = relationship("Provider", foreign_keys=[provider_id], lazy="joined")
    bcba = relationship("Provider", foreign_keys=[bcba_id], lazy="joined")
    client = relationship("Client", foreign_keys=[client_id], lazy="joined")
    insurance = relationship("Insurance", foreign_keys=[insurance_id], lazy="joined")
    entries: Mapped[list["TimesheetEntry"]] = relationship(
        "TimesheetEntry",
        back_populates="timesheet",
        cascade="all, delete-orphan",
        order_by=lambda: [TimesheetEntry.date, TimesheetEntry.start_time],
        lazy="selectin",
    )

    @property
    def total_minutes(self) -> int:
        return sum(e.minutes for e in self.entries)

    @property
    def total_units(self) -> Decimal:
        return sum((e.units for e in self.entries), Decimal("0"))

    def to_dict(self, *, include_entries: bool = False) -> dict:
        data = {
            "id": self.id,
            "timesheet_number": self.timesheet_number,
            "user_id": self.user_id,
            "user_email": self.user.email if self.user else None,
            "provider_id": self.provider_id,
            "provider_name": self.provider.name if self.provider else None,
            "client_id": self.client_id,
            "client_name": self.client.name if self.client else None,
            "bcba_id": self.bcba_id,
            "bcba_name": self.bcba.name if self.bcba else None,
            "insurance_id": self.insurance_id,
            "insurance_name": self.insurance.name if self.insurance else None,
            "is_bcba": self.is_bcba,
            "service_type": self.service_type,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "timezone": self.timezone,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "submitted_at": iso(self.submitted_at),
            "approved_at": iso(self.approved_at),
            "rejected_at": iso(self.rejected_at),
            "queued_at": iso(self.queued_at),
            "emailed_at": iso(self.emailed_at),
            "archived": self.archived,
            "invoice_id": self.invoice_id,
            "invoiced_at": iso(self.invoiced_at),
            "total_minutes": self.total_minutes,
            "total_units": str(self.total_units),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_entries:
            data["entries"] = [e.to_dict() for e in self.entries]
        return data


class TimesheetEntry(Base):
    __tablename__ = "timesheet_entries"
    __table_args__ = (
        Index("idx_timesheet_entries_timesheet", "timesheet_id"),
        Index("idx_timesheet_entries_date", "date"),
        Index("idx_timesheet_entries_invoiced", "invoiced"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timesheet_id: Mapped[int] = mapped_column(ForeignKey("timesheets.id", ondelete="CASCADE"), nullable=False)

    # Local calendar date in the timesheet's timezone
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    units: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)  # DR / SV / free text
    invoiced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    timesheet: Mapped[Timesheet] = relationship("Timesheet", back_populates="entries")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": iso(self.date),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "minutes": self.minutes,
            "units": str(self.units),
            "notes": self.notes,
            "invoiced": self.invoiced,
        }
