"""
Token balance arithmetic.

Supply side (used by reconciliation): top-ups, period refills, the free
reset on deletion and auto-reload credits. Demand side: consume_tokens,
the version-checked decrement the AI features call.

All helpers return a new Subscription and never mutate their input.
`tokens_remaining` never goes below zero. The per-period counters
(`manual_top_up_tokens_added`, `monthly_auto_reloaded_so_far`) are only
zeroed by refill_for_period and by reset_to_free, which starts a new period.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .constants import (
    AUTO_RELOAD_EVENT_TYPE,
    FREE_RESET_TOKEN_ALLOTMENT,
    FREE_WORKSPACE_LIMIT,
    LEDGER_TOKENS_AUTO_RELOADED,
    MAX_CONFLICT_RETRIES,
    PLAN_FREE,
    STATUS_ACTIVE,
)
from .errors import ConcurrentUpdateError, DuplicateEventError
from .models import LedgerEntry, Subscription, add_one_month, to_iso, utc_now
from .subscription_store import Mutation, apply_reconciliation, compare_and_swap, get_subscription
from .webhook_verifier import ProviderEvent

logger = logging.getLogger(__name__)


def _require_positive(tokens: int) -> None:
    if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
        raise ValueError(f"tokens must be a positive integer, got {tokens!r}")


def apply_top_up(sub: Subscription, tokens: int, now: datetime) -> Subscription:
    """One-time purchase: additive and not capped by the monthly quota."""
    _require_positive(tokens)
    return replace(
        sub,
        tokens_remaining=sub.tokens_remaining + tokens,
        manual_top_up_tokens_added=sub.manual_top_up_tokens_added + tokens,
        updated_at=to_iso(now),
    )


def refill_for_period(sub: Subscription, period_end: Optional[str], now: datetime) -> Subscription:
    """New billing period paid: balance back to quota, period counters zeroed."""
    return replace(
        sub,
        tokens_remaining=sub.monthly_token_quota,
        tokens_reset_at=period_end,
        monthly_auto_reloaded_so_far=0,
        monthly_auto_reload_reset_at=to_iso(now),
        manual_top_up_tokens_added=0,
        status=STATUS_ACTIVE,
        updated_at=to_iso(now),
    )


def reset_to_free(
    sub: Subscription,
    now: datetime,
    allotment: int = FREE_RESET_TOKEN_ALLOTMENT,
    workspace_limit: int = FREE_WORKSPACE_LIMIT,
) -> Subscription:
    """
    Hard reset after the provider subscription is gone.

    Any unused paid balance is discarded and replaced with the free
    allotment. Provider linkage and auto-reload configuration are cleared
    and a fresh one-month period starts now.
    """
    period_end = to_iso(add_one_month(now))
    return replace(
        sub,
        plan_tier=PLAN_FREE,
        status=STATUS_ACTIVE,
        provider_subscription_id=None,
        provider_price_id=None,
        workspace_limit=workspace_limit,
        monthly_token_quota=allotment,
        tokens_remaining=allotment,
        tokens_reset_at=period_end,
        current_period_start=to_iso(now),
        current_period_end=period_end,
        cancel_at_period_end=False,
        auto_reload_enabled=False,
        auto_reload_amount=None,
        auto_reload_threshold=None,
        max_monthly_auto_reload=None,
        monthly_auto_reloaded_so_far=0,
        monthly_auto_reload_reset_at=to_iso(now),
        manual_top_up_tokens_added=0,
        updated_at=to_iso(now),
    )


def consume(sub: Subscription, tokens: int, now: datetime) -> Subscription:
    """Decrement the balance, clamped at zero."""
    if tokens < 0:
        raise ValueError(f"tokens must not be negative, got {tokens}")
    return replace(
        sub,
        tokens_remaining=max(0, sub.tokens_remaining - tokens),
        updated_at=to_iso(now),
    )


def within_auto_reload_cap(sub: Subscription, tokens: int) -> bool:
    if sub.max_monthly_auto_reload is None:
        return True
    return sub.monthly_auto_reloaded_so_far + tokens <= sub.max_monthly_auto_reload


def auto_reload_due(sub: Subscription) -> bool:
    """Whether the balance dropped below the configured threshold and the cap allows a reload."""
    if not sub.auto_reload_enabled:
        return False
    if sub.auto_reload_threshold is None or not sub.auto_reload_amount:
        return False
    if sub.tokens_remaining >= sub.auto_reload_threshold:
        return False
    return within_auto_reload_cap(sub, sub.auto_reload_amount)


def credit_auto_reload(sub: Subscription, tokens: int, now: datetime) -> Subscription:
    """Credit a completed auto-reload charge. The cap gates the charge, not the credit."""
    _require_positive(tokens)
    return replace(
        sub,
        tokens_remaining=sub.tokens_remaining + tokens,
        monthly_auto_reloaded_so_far=sub.monthly_auto_reloaded_so_far + tokens,
        updated_at=to_iso(now),
    )


@dataclass(frozen=True)
class ConsumptionResult:
    tokens_remaining: int
    tokens_consumed: int
    auto_reload_due: bool


def consume_tokens(tenant_id: str, tokens: int) -> Optional[ConsumptionResult]:
    """
    Deduct tokens used by an AI feature from a tenant's balance.

    The write is conditioned on the row version, so a concurrent refill or
    top-up is never lost; on conflict the row is re-read and the
    deduction recomputed.

    Args:
        tenant_id: Tenant whose balance is charged
        tokens: Tokens used (the balance is clamped at zero)

    Returns:
        ConsumptionResult, or None if the tenant has no subscription row

    Raises:
        ConcurrentUpdateError: the row kept changing for every attempt
    """
    for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
        current = get_subscription(tenant_id, consistent_read=True)
        if current is None:
            logger.warning(f"No subscription for tenant {tenant_id}, not deducting {tokens} tokens")
            return None

        updated = consume(current, tokens, utc_now())
        stored = compare_and_swap(updated, current.version)
        if stored is None:
            logger.warning(
                f"Version conflict deducting tokens for tenant {tenant_id} "
                f"(attempt {attempt}/{MAX_CONFLICT_RETRIES})"
            )
            continue

        return ConsumptionResult(
            tokens_remaining=stored.tokens_remaining,
            tokens_consumed=current.tokens_remaining - stored.tokens_remaining,
            auto_reload_due=auto_reload_due(stored),
        )

    raise ConcurrentUpdateError(tenant_id, MAX_CONFLICT_RETRIES)


def update_auto_reload_settings(
    tenant_id: str,
    enabled: bool,
    amount: Optional[int] = None,
    threshold: Optional[int] = None,
    max_monthly: Optional[int] = None,
) -> Optional[Subscription]:
    """Save a tenant's auto-reload configuration. Returns None if the tenant has no row."""
    for name, value in (("amount", amount), ("threshold", threshold), ("max_monthly", max_monthly)):
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
        current = get_subscription(tenant_id, consistent_read=True)
        if current is None:
            return None

        updated = replace(
            current,
            auto_reload_enabled=enabled,
            auto_reload_amount=amount,
            auto_reload_threshold=threshold,
            max_monthly_auto_reload=max_monthly,
            updated_at=to_iso(utc_now()),
        )
        stored = compare_and_swap(updated, current.version)
        if stored is not None:
            logger.info(f"Auto-reload settings saved for tenant {tenant_id}: enabled={enabled}")
            return stored

    raise ConcurrentUpdateError(tenant_id, MAX_CONFLICT_RETRIES)


def record_auto_reload(tenant_id: str, tokens: int, payment_reference: str) -> Optional[Subscription]:
    """
    Credit tokens bought by a completed auto-reload charge.

    The charge itself is created elsewhere; `payment_reference` (the
    payment intent id) is the idempotency key, so crediting the same
    charge twice has no further effect.

    Returns:
        The updated Subscription, or None if nothing was credited (no row,
        or already credited)
    """
    _require_positive(tokens)
    event = ProviderEvent(event_id=payment_reference, event_type=AUTO_RELOAD_EVENT_TYPE)

    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        if current is None:
            logger.warning(f"No subscription for tenant {tenant_id}, not crediting auto-reload")
            return None
        now = utc_now()
        credited = credit_auto_reload(current, tokens, now)
        if not within_auto_reload_cap(current, tokens):
            # Already charged; the cap only holds back further charges
            logger.warning(
                f"Auto-reload of {tokens} tokens for tenant {tenant_id} exceeds "
                f"monthly cap {current.max_monthly_auto_reload}"
            )
        entry = LedgerEntry(
            tenant_id=tenant_id,
            type=LEDGER_TOKENS_AUTO_RELOADED,
            provider_event_id=payment_reference,
            created_at=to_iso(now),
            from_plan=current.plan_tier,
            to_plan=current.plan_tier,
            tokens_added=tokens,
            tokens_balance=credited.tokens_remaining,
        )
        return Mutation(credited, entry)

    try:
        mutation = apply_reconciliation(event, tenant_id, transition)
    except DuplicateEventError:
        logger.info(f"Auto-reload {payment_reference} already credited")
        return None
    return mutation.subscription if mutation else None
