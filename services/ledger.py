"""
Ledger Service
Durable store of user balances and escrow transaction records.

Every balance mutation is a serialized read-modify-write:
- an in-process lock keyed by user id (KeyedLock), and
- a ``SELECT ... FOR UPDATE`` re-read of the row inside the writing session.

Methods accept an optional caller-owned ``session`` so that several mutations
(debit + transaction insert, credit + status change) commit together. When a
session is passed the caller must hold the matching locks until it commits -
see ``user_lock``/``sequence_lock``/``transaction_lock``.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal, managed_session
from models import IdSequence, Transaction, TransactionStatus, User, utc_now
from utils.exceptions import (
    AlreadyExists, AlreadyProcessed, InsufficientFunds, NotFound
)
from utils.financial import FinancialCalculator
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


class Ledger:
    """Balances and transaction records with per-record atomic mutation"""

    TRANSACTION_SEQUENCE = "transactions"

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal
        self._user_locks = KeyedLock("ledger_user")
        self._registration_locks = KeyedLock("ledger_registration")
        self._sequence_locks = KeyedLock("ledger_sequence")
        self._transaction_locks = KeyedLock("ledger_transaction")

    # ------------------------------------------------------------------
    # Sessions and locks
    # ------------------------------------------------------------------

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """New session committed on success, rolled back on any error"""
        with managed_session(self.session_factory) as session:
            yield session

    @contextmanager
    def _use_session(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
        else:
            with self.session_scope() as own:
                yield own

    def user_lock(self, *user_ids: int):
        return self._user_locks.hold_many(*user_ids)

    def sequence_lock(self, name: str = TRANSACTION_SEQUENCE):
        return self._sequence_locks.hold(name)

    def transaction_lock(self, tx_id: int):
        return self._transaction_locks.hold(tx_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, telegram_id: int, username: str) -> User:
        """Register a new user with a zero balance"""
        with self._registration_locks.hold(telegram_id):
            try:
                with self.session_scope() as session:
                    existing = session.execute(
                        select(User).where(User.telegram_id == telegram_id)
                    ).scalar_one_or_none()
                    if existing:
                        raise AlreadyExists("Already registered")

                    user = User(
                        telegram_id=telegram_id,
                        username=username,
                        balance=Decimal("0"),
                        created_at=utc_now(),
                        updated_at=None,
                    )
                    session.add(user)
                    session.flush()
            except IntegrityError:
                # Unique index on telegram_id caught a concurrent registration
                raise AlreadyExists("Already registered")

        logger.info(f"👤 USER_REGISTERED: id={user.id} telegram_id={telegram_id} username={username}")
        return user

    def get_user(self, user_id: int, session: Optional[Session] = None) -> User:
        """Look up a user by internal id"""
        with self._use_session(session) as s:
            user = s.get(User, user_id)
            if user is None:
                raise NotFound(f"User ID {user_id} not found")
            return user

    def get_user_by_telegram_id(self, telegram_id: int, session: Optional[Session] = None) -> User:
        with self._use_session(session) as s:
            user = s.execute(
                select(User).where(User.telegram_id == telegram_id)
            ).scalar_one_or_none()
            if user is None:
                raise NotFound("Not registered")
            return user

    def get_user_by_username(self, username: str, session: Optional[Session] = None) -> User:
        """Case-insensitive username lookup; a leading '@' is ignored"""
        name = (username or "").strip().lstrip("@")
        if not name:
            raise NotFound("Username is required")
        with self._use_session(session) as s:
            user = s.execute(
                select(User)
                .where(func.lower(User.username) == name.lower())
                .order_by(User.id)
                .limit(1)
            ).scalar_one_or_none()
            if user is None:
                raise NotFound(f"User {name} is not registered")
            return user

    def list_users(self) -> List[User]:
        with self.session_scope() as session:
            return list(session.execute(select(User).order_by(User.id)).scalars())

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _locked_user(self, session: Session, user_id: int) -> User:
        user = session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
        if user is None:
            raise NotFound(f"User ID {user_id} not found")
        return user

    def debit(self, user_id: int, amount, session: Optional[Session] = None) -> User:
        """Decrease a balance; InsufficientFunds leaves it untouched"""
        amount = FinancialCalculator.parse_amount(amount)
        with self._user_locks.hold(user_id), self._use_session(session) as s:
            user = self._locked_user(s, user_id)
            if user.balance < amount:
                raise InsufficientFunds(
                    f"Insufficient balance: {FinancialCalculator.format_amount(user.balance)} "
                    f"available, {FinancialCalculator.format_amount(amount)} required"
                )
            user.balance = user.balance - amount
            user.updated_at = utc_now()
            s.flush()
            logger.info(f"💸 LEDGER_DEBIT: user={user_id} amount={amount} balance={user.balance}")
            return user

    def credit(self, user_id: int, amount, session: Optional[Session] = None) -> User:
        """Increase a balance"""
        amount = FinancialCalculator.parse_amount(amount)
        with self._user_locks.hold(user_id), self._use_session(session) as s:
            user = self._locked_user(s, user_id)
            user.balance = user.balance + amount
            user.updated_at = utc_now()
            s.flush()
            logger.info(f"💰 LEDGER_CREDIT: user={user_id} amount={amount} balance={user.balance}")
            return user

    def top_up(self, telegram_id: int, amount) -> User:
        """Admin credit by Telegram identity"""
        user = self.get_user_by_telegram_id(telegram_id)
        return self.credit(user.id, amount)

    # ------------------------------------------------------------------
    # Transaction records
    # ------------------------------------------------------------------

    def next_transaction_id(self, session: Optional[Session] = None) -> int:
        """
        Allocate the next transaction id.

        Seeds from the highest existing transaction id the first time, so a
        database that predates the sequence table keeps counting upward.
        """
        with self.sequence_lock(), self._use_session(session) as s:
            sequence = s.execute(
                select(IdSequence)
                .where(IdSequence.name == self.TRANSACTION_SEQUENCE)
                .with_for_update()
            ).scalar_one_or_none()
            if sequence is None:
                highest = s.execute(select(func.max(Transaction.id))).scalar() or 0
                sequence = IdSequence(name=self.TRANSACTION_SEQUENCE, value=highest)
                s.add(sequence)
            sequence.value = sequence.value + 1
            s.flush()
            return int(sequence.value)

    def add_transaction(
        self,
        session: Session,
        tx_id: int,
        buyer_id: int,
        seller_id: int,
        amount: Decimal,
        channel_id: Optional[str] = None,
    ) -> Transaction:
        tx = Transaction(
            id=tx_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            status=TransactionStatus.PENDING.value,
            channel_id=channel_id,
            created_at=utc_now(),
            completed_at=None,
        )
        session.add(tx)
        session.flush()
        return tx

    def get_transaction(
        self, tx_id: int, session: Optional[Session] = None, for_update: bool = False
    ) -> Transaction:
        with self._use_session(session) as s:
            stmt = select(Transaction).where(Transaction.id == tx_id)
            if for_update:
                stmt = stmt.with_for_update()
            tx = s.execute(stmt).scalar_one_or_none()
            if tx is None:
                raise NotFound(f"Transaction {tx_id} not found")
            return tx

    def mark_completed(self, session: Session, tx: Transaction) -> Transaction:
        """pending -> completed, exactly once"""
        if tx.status != TransactionStatus.PENDING.value:
            raise AlreadyProcessed("Already processed")
        tx.status = TransactionStatus.COMPLETED.value
        tx.completed_at = utc_now()
        session.flush()
        return tx

    def list_transactions(self) -> List[Transaction]:
        with self.session_scope() as session:
            return list(session.execute(select(Transaction).order_by(Transaction.id)).scalars())

    def list_transactions_for_user(self, user_id: int) -> List[Transaction]:
        """Transactions where the user is buyer or seller, oldest first"""
        with self.session_scope() as session:
            return list(
                session.execute(
                    select(Transaction)
                    .where(or_(Transaction.buyer_id == user_id, Transaction.seller_id == user_id))
                    .order_by(Transaction.id)
                ).scalars()
            )
