"""
Subscription state machine.

Reconciling one verified event happens in two phases:

1. Resolve: read the event payload and do every provider lookup needed
   (payment intent, subscription, product). The result is either an
   intent for one tenant or a Skip with the reason the event is ignored.
   Nothing is written in this phase, so a failed lookup leaves no trace.
2. Apply: the intent's transition runs against the tenant's row as read
   inside subscription_store.apply_reconciliation and is committed in the
   same transaction as the idempotency reservation and the ledger entry.

Both phases are driven by explicit tables: EVENT_RESOLVERS maps a Stripe
event type to its resolver, TRANSITIONS maps an intent type to its
transition, and UPDATE_LEDGER_RULES orders the audited causes of a
subscription update so at most one ledger entry is emitted per event.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from .constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    LEDGER_CANCELLATION_REVERSED,
    LEDGER_CANCELLATION_SCHEDULED,
    LEDGER_PLAN_CHANGED,
    LEDGER_PLAN_CREATED,
    LEDGER_PLAN_DELETED,
    LEDGER_TOKENS_RESET,
    LEDGER_TOKENS_TOPPED_UP,
    PLAN_FREE,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    TENANT_METADATA_KEY,
    TIER_ORDER,
    TOKEN_RELOAD_TYPE,
)
from .errors import DuplicateEventError
from .logging_utils import bind_event_context
from .models import LedgerEntry, Subscription, epoch_to_iso, to_iso, utc_now
from .plan_catalog import PlanResolution, is_reconcilable_subscription, resolve_offering
from .stripe_client import retrieve_payment_intent, retrieve_subscription
from .subscription_store import (
    OUTCOME_APPLIED,
    OUTCOME_IGNORED,
    Mutation,
    Transition,
    apply_reconciliation,
    record_ignored_event,
)
from .token_ledger import apply_top_up, refill_for_period, reset_to_free
from .webhook_verifier import ProviderEvent

logger = logging.getLogger(__name__)

OUTCOME_DUPLICATE = "duplicate"


# Intents produced by the resolve phase


@dataclass(frozen=True)
class TopUpIntent:
    tokens: int
    payment_intent_id: str


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side view of a created or updated subscription."""

    subscription_id: str
    price_id: Optional[str]
    status: str
    plan: PlanResolution
    cancel_at_period_end: bool
    current_period_start: Optional[str]
    current_period_end: Optional[str]


@dataclass(frozen=True)
class DeletionIntent:
    subscription_id: Optional[str]


@dataclass(frozen=True)
class RefillIntent:
    subscription_id: str
    period_end: Optional[str]


@dataclass(frozen=True)
class PaymentFailedIntent:
    subscription_id: str


Intent = Union[TopUpIntent, SubscriptionSnapshot, DeletionIntent, RefillIntent, PaymentFailedIntent]


@dataclass(frozen=True)
class Resolved:
    tenant_id: str
    intent: Intent


@dataclass(frozen=True)
class Skip:
    reason: str
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str  # applied | ignored | duplicate
    tenant_id: Optional[str] = None
    ledger_type: Optional[str] = None
    reason: Optional[str] = None


# Payload helpers


def _object_id(value) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if value:
        return value.get("id")
    return None


def _metadata(obj) -> dict:
    return obj.get("metadata") or {}


def _tenant_of(obj) -> Optional[str]:
    return _metadata(obj).get(TENANT_METADATA_KEY) or None


def _first_item(subscription) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_bound(subscription, field: str) -> Optional[str]:
    # Newer API versions carry the period on the subscription item
    value = _first_item(subscription).get(field)
    if value is None:
        value = subscription.get(field)
    return epoch_to_iso(value)


def get_invoice_subscription_id(invoice) -> Optional[str]:
    """Subscription behind an invoice (current API nests it under `parent`)."""
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    subscription_id = _object_id(details.get("subscription"))
    if subscription_id:
        return subscription_id
    return _object_id(invoice.get("subscription"))


def _parse_tokens(value) -> Optional[int]:
    try:
        tokens = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return tokens if tokens > 0 else None


# Resolve phase


Resolution = Union[Resolved, Skip]


def resolve_checkout_completed(session) -> Resolution:
    if session.get("mode") != "payment":
        return Skip("not_token_purchase")
    payment_intent_id = _object_id(session.get("payment_intent"))
    if not payment_intent_id:
        return Skip("not_token_purchase")

    payment_intent = retrieve_payment_intent(payment_intent_id)
    metadata = _metadata(payment_intent)
    if metadata.get("type") != TOKEN_RELOAD_TYPE:
        return Skip("not_token_purchase")

    tenant_id = _tenant_of(payment_intent)
    if not tenant_id:
        return Skip("missing_tenant")

    tokens = _parse_tokens(metadata.get("tokens"))
    if tokens is None:
        logger.warning(f"Token purchase {payment_intent_id} has invalid tokens {metadata.get('tokens')!r}")
        return Skip("invalid_token_amount", tenant_id)

    return Resolved(tenant_id, TopUpIntent(tokens=tokens, payment_intent_id=payment_intent_id))


def resolve_subscription_change(subscription) -> Resolution:
    tenant_id = _tenant_of(subscription)
    if not tenant_id:
        return Skip("missing_tenant")

    plan = resolve_offering(subscription)
    if plan is None:
        return Skip("unrelated_product", tenant_id)

    return Resolved(
        tenant_id,
        SubscriptionSnapshot(
            subscription_id=subscription.get("id"),
            price_id=(_first_item(subscription).get("price") or {}).get("id"),
            status=subscription.get("status") or STATUS_ACTIVE,
            plan=plan,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            current_period_start=_period_bound(subscription, "current_period_start"),
            current_period_end=_period_bound(subscription, "current_period_end"),
        ),
    )


def resolve_subscription_deleted(subscription) -> Resolution:
    tenant_id = _tenant_of(subscription)
    if not tenant_id:
        return Skip("missing_tenant")
    if not is_reconcilable_subscription(subscription):
        return Skip("unrelated_product", tenant_id)
    return Resolved(tenant_id, DeletionIntent(subscription_id=subscription.get("id")))


def _resolve_invoice(invoice, build_intent: Callable[[str, dict], Intent]) -> Resolution:
    subscription_id = get_invoice_subscription_id(invoice)
    if not subscription_id:
        return Skip("no_subscription")

    subscription = retrieve_subscription(subscription_id)
    tenant_id = _tenant_of(subscription)
    if not tenant_id:
        return Skip("missing_tenant")
    if not is_reconcilable_subscription(subscription):
        return Skip("unrelated_product", tenant_id)

    return Resolved(tenant_id, build_intent(subscription_id, subscription))


def resolve_invoice_payment_succeeded(invoice) -> Resolution:
    return _resolve_invoice(
        invoice,
        lambda subscription_id, subscription: RefillIntent(
            subscription_id=subscription_id,
            period_end=_period_bound(subscription, "current_period_end"),
        ),
    )


def resolve_invoice_payment_failed(invoice) -> Resolution:
    return _resolve_invoice(
        invoice,
        lambda subscription_id, subscription: PaymentFailedIntent(subscription_id=subscription_id),
    )


EVENT_RESOLVERS: dict[str, Callable[[dict], Resolution]] = {
    EVENT_CHECKOUT_COMPLETED: resolve_checkout_completed,
    EVENT_SUBSCRIPTION_CREATED: resolve_subscription_change,
    EVENT_SUBSCRIPTION_UPDATED: resolve_subscription_change,
    EVENT_SUBSCRIPTION_DELETED: resolve_subscription_deleted,
    EVENT_INVOICE_PAYMENT_SUCCEEDED: resolve_invoice_payment_succeeded,
    EVENT_INVOICE_PAYMENT_FAILED: resolve_invoice_payment_failed,
}


# Apply phase

# Audited causes of a subscription update, highest priority first.
# Each rule compares the stored row with the incoming snapshot.
UPDATE_LEDGER_RULES: tuple[tuple[str, Callable[[Subscription, SubscriptionSnapshot], bool]], ...] = (
    (LEDGER_PLAN_CHANGED, lambda current, snap: current.plan_tier != snap.plan.plan_tier),
    (LEDGER_CANCELLATION_SCHEDULED, lambda current, snap: not current.cancel_at_period_end and snap.cancel_at_period_end),
    (LEDGER_CANCELLATION_REVERSED, lambda current, snap: current.cancel_at_period_end and not snap.cancel_at_period_end),
)


def classify_update(current: Subscription, snapshot: SubscriptionSnapshot) -> Optional[str]:
    """Single ledger type for an update of an existing row, or None if nothing audited changed."""
    for ledger_type, applies in UPDATE_LEDGER_RULES:
        if applies(current, snapshot):
            return ledger_type
    return None


def _entry(
    tenant_id: str,
    ledger_type: str,
    event: ProviderEvent,
    now: str,
    from_plan: Optional[str] = None,
    to_plan: Optional[str] = None,
    tokens_added: Optional[int] = None,
    tokens_balance: Optional[int] = None,
) -> LedgerEntry:
    return LedgerEntry(
        tenant_id=tenant_id,
        type=ledger_type,
        provider_event_id=event.event_id,
        created_at=now,
        from_plan=from_plan,
        to_plan=to_plan,
        tokens_added=tokens_added,
        tokens_balance=tokens_balance,
    )


def _is_current(current: Subscription, subscription_id: Optional[str], event: ProviderEvent, tenant_id: str) -> bool:
    """Whether the event concerns the subscription currently linked to the tenant."""
    if current.provider_subscription_id == subscription_id:
        return True
    # Stale event for an earlier subscription, or already detached
    logger.warning(
        f"Ignoring {event.event_type} for {subscription_id} on tenant {tenant_id}: "
        f"current subscription is {current.provider_subscription_id}"
    )
    return False


def top_up_transition(intent: TopUpIntent, event: ProviderEvent, tenant_id: str) -> Transition:
    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        if current is None:
            logger.warning(f"Token purchase {intent.payment_intent_id} for unknown tenant {tenant_id}")
            return None
        now = utc_now()
        updated = apply_top_up(current, intent.tokens, now)
        return Mutation(
            updated,
            _entry(
                tenant_id,
                LEDGER_TOKENS_TOPPED_UP,
                event,
                to_iso(now),
                from_plan=current.plan_tier,
                to_plan=current.plan_tier,
                tokens_added=intent.tokens,
                tokens_balance=updated.tokens_remaining,
            ),
        )

    return transition


def subscription_change_transition(intent: SubscriptionSnapshot, event: ProviderEvent, tenant_id: str) -> Transition:
    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        now = to_iso(utc_now())
        plan = intent.plan

        if current is None:
            created = Subscription(
                tenant_id=tenant_id,
                plan_tier=plan.plan_tier,
                status=intent.status,
                provider_subscription_id=intent.subscription_id,
                provider_price_id=intent.price_id,
                workspace_limit=plan.workspace_limit,
                monthly_token_quota=plan.monthly_token_quota,
                tokens_remaining=plan.monthly_token_quota,
                current_period_start=intent.current_period_start,
                current_period_end=intent.current_period_end,
                cancel_at_period_end=intent.cancel_at_period_end,
                created_at=now,
                updated_at=now,
            )
            return Mutation(created, _entry(tenant_id, LEDGER_PLAN_CREATED, event, now, to_plan=plan.plan_tier))

        synced = replace(
            current,
            plan_tier=plan.plan_tier,
            status=intent.status,
            provider_subscription_id=intent.subscription_id,
            provider_price_id=intent.price_id,
            workspace_limit=plan.workspace_limit,
            monthly_token_quota=plan.monthly_token_quota,
            current_period_start=intent.current_period_start,
            current_period_end=intent.current_period_end,
            cancel_at_period_end=intent.cancel_at_period_end,
        )
        if synced.state_fields() == current.state_fields():
            return None
        synced = replace(synced, updated_at=now)

        ledger_type = classify_update(current, intent)
        if ledger_type is None:
            return Mutation(synced)

        if ledger_type == LEDGER_PLAN_CHANGED:
            direction = "upgrade" if TIER_ORDER[plan.plan_tier] > TIER_ORDER[current.plan_tier] else "downgrade"
            logger.info(f"Tenant {tenant_id} plan {direction}: {current.plan_tier} -> {plan.plan_tier}")
        entry = _entry(tenant_id, ledger_type, event, now, from_plan=current.plan_tier, to_plan=plan.plan_tier)
        return Mutation(synced, entry)

    return transition


def deletion_transition(intent: DeletionIntent, event: ProviderEvent, tenant_id: str) -> Transition:
    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        if current is None or not _is_current(current, intent.subscription_id, event, tenant_id):
            return None
        now = utc_now()
        reset = reset_to_free(current, now)
        entry = _entry(
            tenant_id,
            LEDGER_PLAN_DELETED,
            event,
            to_iso(now),
            from_plan=current.plan_tier,
            to_plan=PLAN_FREE,
            tokens_balance=reset.tokens_remaining,
        )
        return Mutation(reset, entry)

    return transition


def refill_transition(intent: RefillIntent, event: ProviderEvent, tenant_id: str) -> Transition:
    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        # Never create a row from a stray invoice
        if current is None or not _is_current(current, intent.subscription_id, event, tenant_id):
            return None
        now = utc_now()
        refilled = refill_for_period(current, intent.period_end, now)
        entry = _entry(
            tenant_id,
            LEDGER_TOKENS_RESET,
            event,
            to_iso(now),
            from_plan=current.plan_tier,
            to_plan=current.plan_tier,
            tokens_added=refilled.monthly_token_quota,
            tokens_balance=refilled.tokens_remaining,
        )
        return Mutation(refilled, entry)

    return transition


def payment_failed_transition(intent: PaymentFailedIntent, event: ProviderEvent, tenant_id: str) -> Transition:
    def transition(current: Optional[Subscription]) -> Optional[Mutation]:
        if current is None or not _is_current(current, intent.subscription_id, event, tenant_id):
            return None
        if current.status == STATUS_PAST_DUE:
            return None
        # Status-only change, visible on the row; no ledger entry
        return Mutation(replace(current, status=STATUS_PAST_DUE, updated_at=to_iso(utc_now())))

    return transition


TRANSITIONS: dict[type, Callable[..., Transition]] = {
    TopUpIntent: top_up_transition,
    SubscriptionSnapshot: subscription_change_transition,
    DeletionIntent: deletion_transition,
    RefillIntent: refill_transition,
    PaymentFailedIntent: payment_failed_transition,
}


def reconcile(event: ProviderEvent) -> ReconcileResult:
    """
    Apply one verified Stripe event to local billing state.

    Every path ends with the event durably recorded as processed (applied
    or ignored), or with an exception and nothing written.

    Raises:
        stripe.StripeError: a provider lookup failed
        ConcurrentUpdateError: the tenant row kept changing
        ClientError: DynamoDB failure
    """
    resolver = EVENT_RESOLVERS.get(event.event_type)
    if resolver is None:
        record_ignored_event(event, None, "unhandled_event_type")
        return ReconcileResult(OUTCOME_IGNORED, reason="unhandled_event_type")

    resolution = resolver(event.payload)
    if isinstance(resolution, Skip):
        record_ignored_event(event, resolution.tenant_id, resolution.reason)
        return ReconcileResult(OUTCOME_IGNORED, tenant_id=resolution.tenant_id, reason=resolution.reason)

    tenant_id = resolution.tenant_id
    bind_event_context(tenant_id=tenant_id)
    transition = TRANSITIONS[type(resolution.intent)](resolution.intent, event, tenant_id)

    try:
        mutation = apply_reconciliation(event, tenant_id, transition)
    except DuplicateEventError:
        logger.info(f"Event {event.event_id} already applied by a concurrent delivery")
        return ReconcileResult(OUTCOME_DUPLICATE, tenant_id=tenant_id)

    if mutation is None:
        return ReconcileResult(OUTCOME_IGNORED, tenant_id=tenant_id, reason="no_change")

    ledger_type = mutation.ledger_entry.type if mutation.ledger_entry else None
    return ReconcileResult(OUTCOME_APPLIED, tenant_id=tenant_id, ledger_type=ledger_type)
