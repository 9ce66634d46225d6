"""
Transaction Engine
Opens and confirms escrow transactions against the Ledger.

open:    debit buyer + insert pending record, one DB transaction.
confirm: credit seller + pending -> completed, one DB transaction, only by the buyer.
"""

import logging
from typing import Optional

from models import Transaction
from services.gating_policy import GatingPolicy
from services.ledger import Ledger
from utils.exceptions import AlreadyProcessed, Unauthorized
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


class TransactionEngine:
    """Escrow state machine: pending -> completed, debit happens-before credit"""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def open(self, buyer_id: int, seller_id: int, amount, channel_id: Optional[str] = None) -> Transaction:
        """
        Hold ``amount`` from the buyer in a new pending transaction.

        Raises InvalidAmount, Unauthorized (self-dealing), NotFound or
        InsufficientFunds; in every failure case nothing is written.
        """
        amount = FinancialCalculator.parse_amount(amount)
        if buyer_id == seller_id:
            raise Unauthorized("You cannot pay yourself")

        with self.ledger.user_lock(buyer_id), self.ledger.sequence_lock(), self.ledger.session_scope() as session:
            buyer = self.ledger.get_user(buyer_id, session=session)
            seller = self.ledger.get_user(seller_id, session=session)
            GatingPolicy.require_distinct_parties(buyer, seller, "You cannot pay yourself")

            self.ledger.debit(buyer_id, amount, session=session)
            tx_id = self.ledger.next_transaction_id(session=session)
            tx = self.ledger.add_transaction(
                session, tx_id, buyer_id, seller_id, amount, channel_id=channel_id
            )

        logger.info(
            f"📝 TRANSACTION_OPENED: id={tx.id} buyer={buyer_id} seller={seller_id} "
            f"amount={tx.amount} channel={channel_id}"
        )
        return tx

    def confirm(self, tx_id: int, confirmer_id: int) -> Transaction:
        """
        Release held funds to the seller.

        Checks run in order: NotFound, AlreadyProcessed, Unauthorized. The
        transaction lock plus the status re-check under a row lock make a second
        concurrent confirm fail with AlreadyProcessed instead of crediting twice.
        """
        with self.ledger.transaction_lock(tx_id):
            # Seller is immutable on the record; read it to know which balance to lock
            seller_id = self.ledger.get_transaction(tx_id).seller_id

            with self.ledger.user_lock(seller_id), self.ledger.session_scope() as session:
                tx = self.ledger.get_transaction(tx_id, session=session, for_update=True)
                if not tx.is_pending:
                    raise AlreadyProcessed("Already processed")
                if tx.buyer_id != confirmer_id:
                    logger.warning(
                        f"🚫 CONFIRM_REJECTED: tx={tx_id} confirmer={confirmer_id} is not buyer {tx.buyer_id}"
                    )
                    raise Unauthorized("Not authorized")

                self.ledger.credit(tx.seller_id, tx.amount, session=session)
                self.ledger.mark_completed(session, tx)

        logger.info(f"✅ TRANSACTION_COMPLETED: id={tx.id} seller={tx.seller_id} amount={tx.amount}")
        return tx

    def get(self, tx_id: int) -> Transaction:
        return self.ledger.get_transaction(tx_id)
