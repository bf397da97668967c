"""
Metering orchestration.

Sequences rate limiting, deduplication, pricing, balance check, debit and
settlement for a single consumption request.

Consumption Order:
1. Input validation - Rejects malformed requests and oversized outputs
2. Rate limit - Bounds requests per account
3. Deduplication - Already-settled work ids succeed without effect
4. Pricing - Converts raw usage to provider cost and billable units
5. Balance check - Rejects when the balance cannot cover the units
6. Debit - Deducts billable units from the ledger
7. Settlement - Marks the work id so it is never billed again

There is no lock anywhere in this sequence. Every step is an independent
read or write against a store without atomic primitives, so concurrent
requests for the same account can lose a balance update or be over-admitted
by the rate limiter. A crash between steps 6 and 7 leaves a debit without a
marker, and retrying the same work id then debits twice. Results record
whether the debit happened so callers can tell these cases apart.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Mapping, Optional

from .ledger import Amount, Ledger
from .pricing import (
    BillingPolicy,
    CostBreakdown,
    PricingOverrides,
    convert_usage,
    one_to_one,
    resolve_rates,
)
from .rate_limiter import RateLimiter
from .settlement import ConsumptionGuard
from .token_counter import TokenUsage
from token_meter.config.loader import MeteringConfig
from token_meter.storage.kv import KeyValueStore, StoreError

logger = logging.getLogger(__name__)


class ConsumptionState(Enum):
    """States a consumption request passes through."""
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    DEDUP_CHECKED = "dedup_checked"
    PRICED = "priced"
    BALANCE_CHECKED = "balance_checked"
    DEBITED = "debited"
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    REJECTED_INPUT = "rejected_input"
    REJECTED_RATE = "rejected_rate"
    REJECTED_BALANCE = "rejected_balance"
    STORE_ERROR = "store_error"


class ErrorKind(Enum):
    """Stable error identifiers for failed consumption."""
    INVALID_INPUT = "invalid_input"
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STORE_UNAVAILABLE = "store_unavailable"


_ERROR_KINDS = {
    ConsumptionState.REJECTED_INPUT: ErrorKind.INVALID_INPUT,
    ConsumptionState.REJECTED_RATE: ErrorKind.RATE_LIMITED,
    ConsumptionState.REJECTED_BALANCE: ErrorKind.INSUFFICIENT_BALANCE,
    ConsumptionState.STORE_ERROR: ErrorKind.STORE_UNAVAILABLE,
}


@dataclass(frozen=True)
class ConsumptionResult:
    """Terminal outcome of one consumption request."""
    state: ConsumptionState
    account: Optional[str] = None
    work_id: Optional[str] = None
    deducted: int = 0
    new_balance: Optional[Decimal] = None
    provider_cost: Optional[float] = None
    balance: Optional[Decimal] = None  # Balance observed when rejected for funds
    required: Optional[int] = None
    debited: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state in (ConsumptionState.SETTLED, ConsumptionState.ALREADY_SETTLED)

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return _ERROR_KINDS.get(self.state)

    @property
    def retryable(self) -> bool:
        """Whether retrying the same work id cannot double-bill.

        A store error after the debit is not retryable: the balance already
        moved and the settlement marker may be missing.
        """
        if self.state == ConsumptionState.REJECTED_RATE:
            return True
        return self.state == ConsumptionState.STORE_ERROR and not self.debited


class MeteringService:
    """Meters token consumption against prepaid account balances.

    The service is stateless between calls; all state lives in the store.
    Business rejections and store failures come back as ConsumptionResult
    values from ``consume``. The pass-through operations (``credit``,
    ``get_balance`` and friends) let ``StoreError`` propagate.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: Optional[MeteringConfig] = None,
        clock: Callable[[], float] = time.time,
        policy: BillingPolicy = one_to_one
    ):
        self.store = store
        self.config = config or MeteringConfig()
        self.policy = policy
        self.ledger = Ledger(store)
        self.guard = ConsumptionGuard(store)
        self.pricing = PricingOverrides(store)
        self.rate_limiter = RateLimiter(
            store,
            max_requests=self.config.rate_limit.max_requests,
            window_seconds=self.config.rate_limit.window_seconds,
            clock=clock
        )

    @property
    def max_output_units(self) -> int:
        return self.config.limits.max_output_units

    def convert_usage(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        override_rates: Optional[Mapping[str, object]] = None
    ) -> CostBreakdown:
        """Price raw usage.

        Explicit ``override_rates`` win over stored overrides, which win over
        configured defaults. Precedence is resolved per rate.
        """
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        overrides = self.pricing.load()
        if override_rates:
            overrides.update(
                (key, value) for key, value in override_rates.items() if value is not None
            )
        rates = resolve_rates(overrides, self.config.pricing.rates)
        return convert_usage(usage, rates, scale=self.config.pricing.scale, policy=self.policy)

    def check_rate(self, account: str) -> bool:
        return self.rate_limiter.allow(account)

    def is_settled(self, work_id: str) -> bool:
        return self.guard.is_settled(work_id)

    def settle(self, work_id: str) -> None:
        self.guard.mark_settled(work_id)

    def credit(self, account: str, amount: Amount) -> Decimal:
        new_balance = self.ledger.credit(account, amount)
        logger.info(f"Credited {amount} to {account}, balance {new_balance}")
        return new_balance

    def debit(self, account: str, amount: Amount) -> Decimal:
        return self.ledger.debit(account, amount)

    def get_balance(self, account: str) -> Decimal:
        return self.ledger.read(account)

    def set_prices(
        self,
        price_in: Optional[float] = None,
        price_out: Optional[float] = None
    ) -> None:
        """Store administrative rate overrides used by subsequent requests."""
        self.pricing.set_prices(price_in=price_in, price_out=price_out)
        logger.info(f"Pricing overrides updated (price_in={price_in}, price_out={price_out})")

    def consume(
        self,
        account: str,
        work_id: str,
        prompt_tokens: int,
        completion_tokens: int
    ) -> ConsumptionResult:
        """Bill one unit of work against an account, at most once.

        Args:
            account: Billed account identifier
            work_id: Caller-supplied unique id of the billable event
            prompt_tokens: Provider-reported input tokens
            completion_tokens: Provider-reported output tokens

        Returns:
            ConsumptionResult in a terminal state
        """
        problem = self._validate(account, work_id, prompt_tokens, completion_tokens)
        if problem:
            logger.info(f"Rejected consumption {work_id!r} for {account!r}: {problem}")
            return ConsumptionResult(
                state=ConsumptionState.REJECTED_INPUT,
                account=account if isinstance(account, str) else None,
                work_id=work_id if isinstance(work_id, str) else None,
                message=problem
            )

        state = ConsumptionState.RECEIVED
        try:
            if not self.rate_limiter.allow(account):
                logger.info(f"Rate limit exceeded for {account}")
                return ConsumptionResult(
                    state=ConsumptionState.REJECTED_RATE,
                    account=account,
                    work_id=work_id,
                    message="rate_limit_exceeded"
                )
            state = ConsumptionState.RATE_CHECKED

            if self.guard.is_settled(work_id):
                logger.debug(f"Work {work_id} already settled")
                return ConsumptionResult(
                    state=ConsumptionState.ALREADY_SETTLED,
                    account=account,
                    work_id=work_id,
                    message="already_consumed"
                )
            state = ConsumptionState.DEDUP_CHECKED

            cost = self.convert_usage(prompt_tokens, completion_tokens)
            state = ConsumptionState.PRICED

            balance = self.ledger.read(account)
            if balance < cost.billable_units:
                logger.info(
                    f"Insufficient balance for {account}: "
                    f"{balance} < {cost.billable_units}"
                )
                return ConsumptionResult(
                    state=ConsumptionState.REJECTED_BALANCE,
                    account=account,
                    work_id=work_id,
                    provider_cost=cost.provider_cost,
                    balance=balance,
                    required=cost.billable_units,
                    message="insufficient_balance"
                )
            state = ConsumptionState.BALANCE_CHECKED

            new_balance = self.ledger.debit(account, cost.billable_units)
            state = ConsumptionState.DEBITED

            self.guard.mark_settled(work_id)
        except StoreError as e:
            debited = state == ConsumptionState.DEBITED
            logger.debug(f"Store failure after {state.value} for {work_id}: {e}")
            return ConsumptionResult(
                state=ConsumptionState.STORE_ERROR,
                account=account,
                work_id=work_id,
                debited=debited,
                deducted=cost.billable_units if debited else 0,
                new_balance=new_balance if debited else None,
                message=str(e)
            )

        logger.info(
            f"Settled {work_id} for {account}: "
            f"deducted {cost.billable_units}, balance {new_balance}"
        )
        return ConsumptionResult(
            state=ConsumptionState.SETTLED,
            account=account,
            work_id=work_id,
            deducted=cost.billable_units,
            new_balance=new_balance,
            provider_cost=cost.provider_cost,
            debited=True
        )

    def _validate(
        self,
        account: object,
        work_id: object,
        prompt_tokens: object,
        completion_tokens: object
    ) -> Optional[str]:
        if not isinstance(account, str) or not account.strip():
            return "account is required"
        if not isinstance(work_id, str) or not work_id.strip():
            return "work_id is required"
        for name, value in (
            ("prompt_tokens", prompt_tokens),
            ("completion_tokens", completion_tokens),
        ):
            if isinstance(value, bool) or not isinstance(value, int):
                return f"{name} must be an integer"
            if value < 0:
                return f"{name} must be >= 0"
        if completion_tokens > self.max_output_units:
            return (
                f"output_too_large: {completion_tokens} exceeds "
                f"{self.max_output_units} per request"
            )
        return None
