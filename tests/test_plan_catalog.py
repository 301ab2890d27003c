"""
Tests for product classification and plan metadata resolution.
"""

from unittest.mock import patch

import pytest
import stripe

from conftest import make_product, make_subscription


class TestResolvePlan:
    def test_reads_all_fields(self):
        from shared.plan_catalog import PlanResolution, resolve_plan

        plan = resolve_plan({"plan_tier": "basic", "max_workspaces": "3", "monthly_tokens": "20000"})

        assert plan == PlanResolution("basic", 3, 20000)

    @pytest.mark.parametrize("value", ["unlimited", "UNLIMITED", " Unlimited "])
    def test_unlimited_workspaces(self, value):
        from shared.plan_catalog import resolve_plan

        assert resolve_plan({"plan_tier": "pro", "max_workspaces": value}).workspace_limit is None

    def test_missing_metadata_uses_defaults(self):
        from shared.plan_catalog import DEFAULT_PLAN, resolve_plan

        assert resolve_plan(None) == DEFAULT_PLAN
        assert resolve_plan({}) == DEFAULT_PLAN

    def test_malformed_fields_fall_back_individually(self):
        from shared.constants import DEFAULT_MONTHLY_TOKENS, DEFAULT_WORKSPACE_LIMIT
        from shared.plan_catalog import resolve_plan

        plan = resolve_plan({"plan_tier": "pro", "max_workspaces": "many", "monthly_tokens": "-5"})

        assert plan.plan_tier == "pro"
        assert plan.workspace_limit == DEFAULT_WORKSPACE_LIMIT
        assert plan.monthly_token_quota == DEFAULT_MONTHLY_TOKENS

    def test_unknown_tier_falls_back(self, caplog):
        from shared.constants import DEFAULT_PLAN_TIER
        from shared.plan_catalog import resolve_plan

        plan = resolve_plan({"plan_tier": "enterprise", "monthly_tokens": "100"})

        assert plan.plan_tier == DEFAULT_PLAN_TIER
        assert plan.monthly_token_quota == 100
        assert "Unknown plan_tier" in caplog.text

    def test_zero_is_a_valid_quota(self):
        from shared.plan_catalog import resolve_plan

        assert resolve_plan({"plan_tier": "free", "max_workspaces": "0", "monthly_tokens": "0"}).workspace_limit == 0


class TestProductClassification:
    def test_tagged_product_is_reconcilable(self):
        from shared.plan_catalog import is_reconcilable_product

        assert is_reconcilable_product(make_product()) is True

    def test_untagged_or_missing_product(self):
        from shared.plan_catalog import is_reconcilable_product

        assert is_reconcilable_product(make_product(tagged=False)) is False
        assert is_reconcilable_product({"id": "prod_x", "metadata": None}) is False
        assert is_reconcilable_product(None) is False

    def test_get_product_ref(self):
        from shared.plan_catalog import get_product_ref

        assert get_product_ref(make_subscription()) == "prod_pro"
        assert get_product_ref({"items": {"data": []}}) is None
        assert get_product_ref({}) is None


class TestResolveOffering:
    def test_looks_up_product_by_id(self):
        from shared.plan_catalog import resolve_offering

        with patch("stripe.Product.retrieve", return_value=make_product(plan_tier="basic")) as mock_retrieve:
            plan = resolve_offering(make_subscription())

        mock_retrieve.assert_called_once_with("prod_pro")
        assert plan.plan_tier == "basic"

    def test_expanded_product_needs_no_lookup(self):
        from shared.plan_catalog import resolve_offering

        with patch("stripe.Product.retrieve") as mock_retrieve:
            plan = resolve_offering(make_subscription(product=make_product(monthly_tokens="777")))

        mock_retrieve.assert_not_called()
        assert plan.monthly_token_quota == 777

    def test_untagged_product_is_not_an_offering(self):
        from shared.plan_catalog import is_reconcilable_subscription, resolve_offering

        with patch("stripe.Product.retrieve", return_value=make_product(tagged=False)):
            assert resolve_offering(make_subscription()) is None
            assert is_reconcilable_subscription(make_subscription()) is False

    def test_missing_product_is_not_an_offering(self):
        from shared.plan_catalog import resolve_offering

        assert resolve_offering({"id": "sub_1", "items": {"data": []}}) is None

    def test_unretrievable_product_is_not_an_offering(self):
        from shared.plan_catalog import resolve_offering

        error = stripe.InvalidRequestError("No such product: 'prod_gone'", "id")
        with patch("stripe.Product.retrieve", side_effect=error):
            assert resolve_offering(make_subscription(product="prod_gone")) is None

    def test_transient_lookup_error_propagates(self):
        from shared.plan_catalog import resolve_offering

        with patch("stripe.Product.retrieve", side_effect=stripe.APIConnectionError("timeout")):
            with pytest.raises(stripe.APIConnectionError):
                resolve_offering(make_subscription())
