"""
Billing records: the per-tenant Subscription row and append-only ledger entries.
"""

import calendar
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .constants import DEFAULT_WORKSPACE_LIMIT, PLAN_FREE, STATUS_ACTIVE
from .types import LedgerEventItem, SubscriptionItem

SUBSCRIPTION_SK = "SUBSCRIPTION"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def epoch_to_iso(value) -> Optional[str]:
    """Convert a Stripe Unix timestamp to ISO-8601, or None when absent."""
    if value is None or value == "":
        return None
    return to_iso(datetime.fromtimestamp(int(value), tz=timezone.utc))


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_int(value) -> Optional[int]:
    if value is None:
        return None
    return int(value)


@dataclass
class Subscription:
    """One row per tenant. Mutated only by reconciliation and the token ledger."""

    tenant_id: str
    plan_tier: str = PLAN_FREE
    status: str = STATUS_ACTIVE
    provider_subscription_id: Optional[str] = None
    provider_price_id: Optional[str] = None
    workspace_limit: Optional[int] = DEFAULT_WORKSPACE_LIMIT  # None means unbounded
    monthly_token_quota: int = 0
    tokens_remaining: int = 0
    tokens_reset_at: Optional[str] = None
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False
    auto_reload_enabled: bool = False
    auto_reload_amount: Optional[int] = None
    auto_reload_threshold: Optional[int] = None
    max_monthly_auto_reload: Optional[int] = None
    monthly_auto_reloaded_so_far: int = 0
    monthly_auto_reload_reset_at: Optional[str] = None
    manual_top_up_tokens_added: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0

    def to_item(self) -> SubscriptionItem:
        return {"pk": self.tenant_id, "sk": SUBSCRIPTION_SK, **asdict(self)}

    @classmethod
    def from_item(cls, item: dict) -> "Subscription":
        values = {}
        for f in fields(cls):
            if f.name not in item:
                continue
            value = item[f.name]
            if isinstance(value, Decimal):
                value = int(value)
            values[f.name] = value
        return cls(**values)

    def state_fields(self) -> dict:
        """Every field except the bookkeeping ones a write always changes."""
        state = asdict(self)
        for key in ("updated_at", "version"):
            state.pop(key)
        return state


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable audit record of one state-changing reconciliation."""

    tenant_id: str
    type: str
    provider_event_id: str
    created_at: str
    from_plan: Optional[str] = None
    to_plan: Optional[str] = None
    tokens_added: Optional[int] = None
    tokens_balance: Optional[int] = None

    @property
    def sort_key(self) -> str:
        return f"{self.created_at}#{self.provider_event_id}"

    def to_item(self) -> LedgerEventItem:
        return {"pk": self.tenant_id, "sk": self.sort_key, **asdict(self)}

    @classmethod
    def from_item(cls, item: dict) -> "LedgerEntry":
        return cls(
            tenant_id=item["tenant_id"],
            type=item["type"],
            provider_event_id=item["provider_event_id"],
            created_at=item["created_at"],
            from_plan=item.get("from_plan"),
            to_plan=item.get("to_plan"),
            tokens_added=_as_int(item.get("tokens_added")),
            tokens_balance=_as_int(item.get("tokens_balance")),
        )
