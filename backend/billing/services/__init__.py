"""Expose commonly used billing services."""

from .credit_ledger import (
    CreditLedgerError,
    CreditLedgerResult,
    InsufficientCredits,
    InvalidCreditAmount,
    ProfileNotFound,
    adjust_credits,
    consume_credits,
    ledger_totals,
    set_credit_balance,
)
