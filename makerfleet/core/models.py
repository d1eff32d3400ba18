"""
Database models for makerfleet.

Models: ProcessedWallet, DeliveryRecord.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ProcessedReason(str, Enum):
    """Why a wallet was recorded as processed for a mint."""
    HAS_TOKENS = "has_tokens"
    NO_SOL = "no_sol"


class ProcessedWallet(Base):
    """
    A wallet already confirmed to hold the target token or to be out of SOL.

    Append-only. One row per (address, mint).
    """

    __tablename__ = "processed_wallets"
    __table_args__ = (UniqueConstraint("address", "mint", name="uq_processed_address_mint"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    address: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    mint: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    reason: Mapped[ProcessedReason] = mapped_column(
        SQLEnum(ProcessedReason), default=ProcessedReason.HAS_TOKENS
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ProcessedWallet {self.address} mint={self.mint} reason={self.reason.value}>"


class DeliveryRecord(Base):
    """
    Terminal outcome of one delivery attempt.

    Written by stage units so the operator can audit what landed.
    """

    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stage: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    wallet: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<DeliveryRecord {self.id}: {self.stage} {self.wallet} {self.status}>"
