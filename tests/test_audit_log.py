"""
Tests for the append-only ledger.
"""

import pytest


def _entry(created_at, event_id, ledger_type="tokens_topped_up", tenant_id="user_1", **fields):
    from shared.models import LedgerEntry

    return LedgerEntry(
        tenant_id=tenant_id,
        type=ledger_type,
        provider_event_id=event_id,
        created_at=created_at,
        **fields,
    )


@pytest.fixture
def seed_ledger(mock_dynamodb):
    table = mock_dynamodb.Table("ws-ledger-events")

    def _seed(*entries):
        for entry in entries:
            table.put_item(Item=entry.to_item())

    return _seed


class TestBuildLedgerPut:
    def test_serialized_conditional_put(self):
        from shared.audit_log import build_ledger_put

        put = build_ledger_put(_entry("2026-01-15T00:00:00+00:00", "evt_1", tokens_added=100, tokens_balance=600))["Put"]

        assert put["TableName"] == "ws-ledger-events"
        assert put["ConditionExpression"] == "attribute_not_exists(pk)"
        assert put["Item"]["pk"] == {"S": "user_1"}
        assert put["Item"]["sk"] == {"S": "2026-01-15T00:00:00+00:00#evt_1"}
        assert put["Item"]["tokens_added"] == {"N": "100"}
        assert put["Item"]["from_plan"] == {"NULL": True}


class TestQueries:
    def test_list_newest_first(self, seed_ledger):
        from shared.audit_log import list_ledger_events

        seed_ledger(
            _entry("2026-01-01T00:00:00+00:00", "evt_a", "plan_created", to_plan="pro"),
            _entry("2026-01-20T00:00:00+00:00", "evt_c", tokens_added=5, tokens_balance=5),
            _entry("2026-01-10T00:00:00+00:00", "evt_b", "plan_changed", from_plan="pro", to_plan="basic"),
            _entry("2026-01-05T00:00:00+00:00", "evt_other", tenant_id="user_2"),
        )

        events = list_ledger_events("user_1")

        assert [entry.provider_event_id for entry in events] == ["evt_c", "evt_b", "evt_a"]
        assert events[0].tokens_added == 5
        assert isinstance(events[0].tokens_balance, int)

    def test_list_respects_limit(self, seed_ledger):
        from shared.audit_log import list_ledger_events

        seed_ledger(*[_entry(f"2026-01-0{day}T00:00:00+00:00", f"evt_{day}") for day in range(1, 6)])

        assert len(list_ledger_events("user_1", limit=2)) == 2

    def test_find_by_provider_event(self, seed_ledger):
        from shared.audit_log import find_ledger_event

        seed_ledger(_entry("2026-01-10T00:00:00+00:00", "evt_b", "plan_deleted", from_plan="pro", to_plan="free"))

        entry = find_ledger_event("evt_b")

        assert entry.type == "plan_deleted"
        assert entry.to_plan == "free"
        assert find_ledger_event("evt_missing") is None
