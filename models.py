"""
Escrow Room Bot - Database Schema
=================================

Small, focused schema for the escrow room bot:
- Registered Telegram users and their balances
- Escrow transactions (pending -> completed)
- Named id sequences for race-free transaction id allocation

Channel (room) state is NOT persisted here - it lives in the in-process ChannelPool.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from sqlalchemy import (
    BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Timezone-aware current time used for every timestamp column"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionStatus(Enum):
    """Escrow transaction lifecycle - one-way, single-shot"""
    PENDING = "pending"
    COMPLETED = "completed"


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Registered Telegram user with an escrow balance"""
    __tablename__ = 'users'

    # Primary identification
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    username: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Balance (mutated only through the Ledger)
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    purchases: Mapped[list["Transaction"]] = relationship(
        "Transaction", foreign_keys="Transaction.buyer_id", back_populates="buyer"
    )
    sales: Mapped[list["Transaction"]] = relationship(
        "Transaction", foreign_keys="Transaction.seller_id", back_populates="seller"
    )

    __table_args__ = (
        Index('ix_users_telegram_id', 'telegram_id', unique=True),
        CheckConstraint('balance >= 0', name='ck_user_balance_non_negative'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "telegram_id": self.telegram_id,
            "username": self.username,
            "balance": str(self.balance),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, username={self.username}, balance={self.balance})>"


class Transaction(Base):
    """Escrow transaction: buyer funds are held until the buyer confirms"""
    __tablename__ = 'transactions'

    # Assigned from the 'transactions' IdSequence, not autoincrement
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    buyer_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value, nullable=False)

    # Escrow room the deal was opened in (None for admin-created transactions)
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    buyer: Mapped["User"] = relationship("User", foreign_keys=[buyer_id], back_populates="purchases")
    seller: Mapped["User"] = relationship("User", foreign_keys=[seller_id], back_populates="sales")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        CheckConstraint('buyer_id <> seller_id', name='ck_transaction_distinct_parties'),
        CheckConstraint(
            f"status IN ('{TransactionStatus.PENDING.value}', '{TransactionStatus.COMPLETED.value}')",
            name='ck_transaction_status_valid'
        ),
        Index('ix_transactions_status_created', 'status', 'created_at'),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "amount": str(self.amount),
            "status": self.status,
            "channel_id": self.channel_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<Transaction(id={self.id}, buyer_id={self.buyer_id}, seller_id={self.seller_id}, amount={self.amount}, status={self.status})>"


class IdSequence(Base):
    """Named monotonic counter; one row per sequence"""
    __tablename__ = 'id_sequences'

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    def __repr__(self):
        return f"<IdSequence(name={self.name}, value={self.value})>"
