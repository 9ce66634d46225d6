"""Financial amount utilities with decimal precision"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from config import Config
from utils.exceptions import InvalidAmount

logger = logging.getLogger(__name__)


class FinancialCalculator:
    """Parses and formats escrow amounts without float rounding errors"""

    # 2 decimal places
    PRECISION = Config.AMOUNT_QUANTUM

    @classmethod
    def parse_amount(cls, value: Any) -> Decimal:
        """
        Convert user/admin input to a positive Decimal amount.

        Floats go through ``str`` so 0.1 stays 0.1. Anything that is not a finite,
        positive number representable at ``PRECISION`` raises InvalidAmount.
        """
        if isinstance(value, bool) or value is None:
            raise InvalidAmount("Amount is required")
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Invalid amount: {value}")

        if not amount.is_finite():
            raise InvalidAmount(f"Invalid amount: {value}")
        if amount <= 0:
            raise InvalidAmount("Amount must be greater than 0")
        if amount != amount.quantize(cls.PRECISION):
            raise InvalidAmount(f"Amount supports at most {-cls.PRECISION.as_tuple().exponent} decimal places")
        return amount.quantize(cls.PRECISION)

    @classmethod
    def format_amount(cls, amount: Decimal) -> str:
        return str(Decimal(amount).quantize(cls.PRECISION))
