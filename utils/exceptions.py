"""
Escrow Error Taxonomy
Business-rule violations raised by the ledger, channel pool and transaction engine.

These are reported synchronously to the caller and never swallowed. Cleanup-path
failures (notifications, evictions, invite revocation) are NOT modelled here - they
are logged and skipped by the cleanup scheduler.
"""

from typing import Optional


class EscrowError(Exception):
    """Base escrow error with a human-readable reason and a stable code"""

    error_code = "escrow_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class NotFound(EscrowError):
    """Unknown user, transaction or channel"""
    error_code = "not_found"


class AlreadyExists(EscrowError):
    """Duplicate registration"""
    error_code = "already_exists"


class AlreadyBusy(EscrowError):
    """Channel is already reserved for another deal"""
    error_code = "already_busy"


class NoFreeChannel(EscrowError):
    """Every channel in the pool is busy"""
    error_code = "no_free_channel"


class InsufficientFunds(EscrowError):
    """Buyer balance does not cover the amount"""
    error_code = "insufficient_funds"


class Unauthorized(EscrowError):
    """Gating failure, wrong confirmer or self-dealing"""
    error_code = "unauthorized"


class AlreadyProcessed(EscrowError):
    """Transaction is no longer pending"""
    error_code = "already_processed"


class InvalidAmount(EscrowError):
    """Amount is missing, non-numeric or not positive"""
    error_code = "invalid_amount"


class InviteCreationFailed(EscrowError):
    """Transport could not produce an invite link for the reserved channel"""
    error_code = "invite_creation_failed"
