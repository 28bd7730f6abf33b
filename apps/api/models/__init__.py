"""Models package."""

from .credit_balance import CreditBalance
from .transaction import Transaction
from .usage_log import UsageLog
