"""Tests for BudgetController band classification and chain reshaping."""

import pytest
from pydantic import ValidationError

from aidispatch.core.exceptions import LedgerUnavailableError
from aidispatch.models.policy import BudgetControls
from aidispatch.models.routing import BudgetBand, DispatchSignals
from aidispatch.routing.budget import BudgetController
from tests.conftest import spend

SIMPLE = DispatchSignals()
COMPLEX = DispatchSignals(is_complex=True)
IMAGES = DispatchSignals(has_images=True, image_count=1)
COMPLEX_IMAGES = DispatchSignals(has_images=True, image_count=1, is_complex=True)


class TestBudgetControls:
    def test_defaults_valid(self):
        controls = BudgetControls()
        assert controls.warning_fraction < controls.degrade_fraction

    @pytest.mark.parametrize("warning, degrade", [(0.9, 0.7), (0.0, 0.5), (0.5, 1.2), (0.7, 0.7)])
    def test_bands_must_stay_monotonic(self, warning, degrade):
        with pytest.raises(ValidationError):
            BudgetControls(warning_fraction=warning, degrade_fraction=degrade)

    def test_limit_must_be_positive(self):
        with pytest.raises(ValidationError):
            BudgetControls(daily_limit=0)


class TestBands:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "spent, band",
        [(0.0, "normal"), (6.99, "normal"), (7.0, "warning"), (8.99, "warning"),
         (9.0, "degrade"), (9.99, "degrade"), (10.0, "exhausted"), (14.0, "exhausted")],
    )
    async def test_band_from_spend(self, budget, ledger, spent, band):
        if spent:
            await spend(ledger, spent)
        state = await budget.budget_state()
        assert state.band.value == band

    @pytest.mark.asyncio
    async def test_state_recomputed_from_ledger(self, budget, ledger):
        assert (await budget.budget_state()).band == BudgetBand.NORMAL
        await spend(ledger, 9.5)
        assert (await budget.budget_state()).band == BudgetBand.DEGRADE


class TestNormalBand:
    @pytest.mark.asyncio
    async def test_chain_unchanged(self, budget, policies):
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis"), SIMPLE)
        assert decision.model_ids == ["qwen-long", "qwen-turbo", "qwen-plus"]
        assert decision.band == BudgetBand.NORMAL
        assert not decision.degraded
        assert decision.warning is None

    @pytest.mark.asyncio
    async def test_vision_chain_unchanged_with_images(self, budget, policies):
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis_vision"), IMAGES)
        assert decision.model_ids == ["qwen-vl-max", "qwen-vl-plus", "qwen-long"]
        assert not decision.text_only


class TestWarningBand:
    @pytest.mark.asyncio
    async def test_complex_without_images_gets_mid_cost_expert(self, budget, ledger, policies, registry):
        await spend(ledger, 7.5)
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis"), COMPLEX)
        lead = registry.get(decision.model_ids[0])
        assert lead.model_id == "qwen-plus"
        assert not lead.supports_vision
        assert decision.model_ids[1] == "qwen-long"
        assert decision.band == BudgetBand.WARNING
        assert decision.warning

    @pytest.mark.asyncio
    async def test_simple_request_prefers_free_model(self, budget, ledger, policies):
        await spend(ledger, 7.5)
        decision = await budget.adjust_chain(policies.resolve("general_chat"), SIMPLE)
        assert decision.model_ids == ["qwen-long", "qwen-turbo"]
        assert decision.degraded

    @pytest.mark.asyncio
    async def test_images_use_cheaper_vision_sibling(self, budget, ledger, policies):
        await spend(ledger, 7.5)
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis_vision"), IMAGES)
        assert decision.model_ids == ["qwen-vl-plus", "qwen-long"]
        assert not decision.text_only


class TestDegradeBand:
    @pytest.mark.asyncio
    async def test_simple_gets_free_only(self, budget, ledger, policies):
        await spend(ledger, 9.2)
        decision = await budget.adjust_chain(policies.resolve("complex_diagnosis"), SIMPLE)
        assert decision.model_ids == ["qwen-long"]
        assert decision.degraded

    @pytest.mark.asyncio
    async def test_complex_gets_one_cheap_paid_attempt(self, budget, ledger, policies):
        await spend(ledger, 9.2)
        decision = await budget.adjust_chain(policies.resolve("complex_diagnosis"), COMPLEX)
        assert decision.model_ids == ["qwen-turbo", "qwen-long"]

    @pytest.mark.asyncio
    async def test_complex_with_images_gets_cheapest_vision_model(self, budget, ledger, policies):
        await spend(ledger, 9.2)
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis_vision"), COMPLEX_IMAGES)
        assert decision.model_ids == ["qwen-vl-plus", "qwen-long"]
        assert not decision.text_only

    @pytest.mark.asyncio
    async def test_simple_with_images_is_text_only(self, budget, ledger, policies):
        await spend(ledger, 9.2)
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis_vision"), IMAGES)
        assert decision.model_ids == ["qwen-long"]
        assert decision.text_only


class TestExhaustedBand:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", ["health_diagnosis", "complex_diagnosis", "health_diagnosis_vision", "general_chat"])
    @pytest.mark.parametrize("signals", [SIMPLE, COMPLEX, IMAGES, COMPLEX_IMAGES])
    async def test_only_zero_cost_models(self, budget, ledger, policies, registry, category, signals):
        await spend(ledger, 10.0)
        decision = await budget.adjust_chain(policies.resolve(category), signals)
        assert decision.model_ids
        assert all(registry.get(m).cost_per_call_estimate == 0 for m in decision.model_ids)
        assert decision.degraded
        assert "00:00 UTC" in decision.warning

    @pytest.mark.asyncio
    async def test_no_free_model_gives_empty_chain(self, ledger, controls):
        from aidispatch.routing.model_registry import ModelRegistry
        from aidispatch.routing.policy import TaskPolicyTable

        registry = ModelRegistry.from_dict({"models": {"paid": {"provider": "p", "cost_per_call_estimate": 1.0}}})
        table = TaskPolicyTable.from_dict({"task_policies": {"t": {"primary_model_id": "paid"}}}, registry)
        controller = BudgetController(ledger, registry, controls)
        await spend(ledger, 10.0)
        decision = await controller.adjust_chain(table.resolve("t"), SIMPLE)
        assert decision.model_ids == []


class TestCaps:
    @pytest.mark.asyncio
    async def test_daily_request_cap_removes_model(self, budget, ledger, policies):
        for _ in range(3):
            await ledger.record("qwen-vl-max", tokens=0, cost=0.0)
        budget._registry._models["qwen-vl-max"] = budget._registry.get("qwen-vl-max").model_copy(
            update={"daily_request_cap": 3}
        )
        decision = await budget.adjust_chain(policies.resolve("health_diagnosis_vision"), IMAGES)
        assert decision.model_ids == ["qwen-vl-plus", "qwen-long"]
        assert "daily_cap:qwen-vl-max" in decision.constraints

    @pytest.mark.asyncio
    async def test_policy_quota_removes_primary(self, budget, ledger, policies):
        policy = policies.resolve("complex_diagnosis").model_copy(update={"daily_quota": 2})
        await ledger.record("qwen-plus", tokens=0, cost=0.0)
        await ledger.record("qwen-plus", tokens=0, cost=0.0)
        decision = await budget.adjust_chain(policy, COMPLEX)
        assert decision.model_ids == ["qwen-long", "qwen-turbo"]
        assert "policy_quota:qwen-plus" in decision.constraints


class UnreadableLedger:
    def __init__(self, ledger):
        self.today = ledger.today

    async def total_spent_today(self):
        raise LedgerUnavailableError("redis down")

    async def requests_today(self, model_id):
        raise LedgerUnavailableError("redis down")


class TestLedgerFailure:
    @pytest.mark.asyncio
    async def test_unreadable_ledger_fails_closed(self, registry, controls, policies, ledger):
        controller = BudgetController(UnreadableLedger(ledger), registry, controls)
        decision = await controller.adjust_chain(policies.resolve("complex_diagnosis"), COMPLEX)
        assert decision.band == BudgetBand.EXHAUSTED
        assert decision.model_ids == ["qwen-long"]
