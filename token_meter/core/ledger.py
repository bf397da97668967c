"""
Per-account balance ledger.

Balances are stored as decimal strings under ``balance:<account>``.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Union

from token_meter.storage.kv import KeyValueStore
from token_meter.storage.models import balance_key

logger = logging.getLogger(__name__)

Amount = Union[int, float, Decimal]


class Ledger:
    """Read/modify/write access to per-account balances.

    Every mutation is a plain read followed by a plain write; the store has
    no atomic increment. Two concurrent ``credit`` calls on the same account
    can both read the same prior balance, and the later write silently
    discards the earlier one (lost update). This is an accepted limitation.
    A store with compare-and-swap, or a single writer per account, removes
    it without changing this interface.

    The ledger performs no sufficiency check and no retries; ``StoreError``
    propagates to the caller.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def read(self, account: str) -> Decimal:
        """Return the balance, or 0 if absent or unparsable."""
        raw = self.store.get(balance_key(account))
        if raw is None:
            return Decimal(0)
        try:
            value = Decimal(raw)
        except (InvalidOperation, ValueError):
            logger.warning(f"Unparsable balance for {account}: {raw!r}, treating as 0")
            return Decimal(0)
        if not value.is_finite():
            logger.warning(f"Non-finite balance for {account}: {raw!r}, treating as 0")
            return Decimal(0)
        return value

    def credit(self, account: str, delta: Amount) -> Decimal:
        """Add ``delta`` (any sign) to the balance and return the new balance.

        Raises:
            ValueError: If ``delta`` is not a finite number
        """
        amount = _as_decimal(delta)
        current = self.read(account)
        new_balance = current + amount
        self.store.put(balance_key(account), str(new_balance))
        return new_balance

    def debit(self, account: str, amount: Amount) -> Decimal:
        """Subtract ``amount`` from the balance and return the new balance."""
        return self.credit(account, -_as_decimal(amount))


def _as_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"amount must be a number, got {amount!r}")
    if not value.is_finite():
        raise ValueError(f"amount must be finite, got {amount!r}")
    return value
