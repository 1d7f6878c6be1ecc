from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aba.models import Base, utcnow
from app.aba.utils import iso, money


class Insurance(Base):
    __tablename__ = "insurance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Legacy single rate; regular/BCBA rates fall back to it when unset.
    rate_per_unit: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    regular_rate_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    bcba_rate_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rate_per_unit": money(self.rate_per_unit),
            "regular_rate_per_unit": money(self.regular_rate_per_unit) if self.regular_rate_per_unit is not None else None,
            "bcba_rate_per_unit": money(self.bcba_rate_per_unit) if self.bcba_rate_per_unit is not None else None,
            "active": self.active,
        }


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        Index("idx_clients_name", "name"),
        Index("idx_clients_active", "active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    medicaid_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    insurance_id: Mapped[int | None] = mapped_column(ForeignKey("insurance.id", ondelete="SET NULL"), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    insurance: Mapped[Insurance | None] = relationship("Insurance", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "medicaid_id": self.medicaid_id,
            "address": self.address,
            "phone": self.phone,
            "email": self.email,
            "insurance_id": self.insurance_id,
            "insurance_name": self.insurance.name if self.insurance else None,
            "active": self.active,
            "created_at": iso(self.created_at),
        }


class Provider(Base):
    __tablename__ = "providers"
    __table_args__ = (
        Index("idx_providers_name", "name"),
        Index("idx_providers_kind", "kind"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="RBT")  # RBT, BCBA
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "kind": self.kind,
            "active": self.active,
            "created_at": iso(self.created_at),
        }
