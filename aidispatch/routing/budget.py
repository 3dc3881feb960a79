"""
Budget Controller

Classifies today's spend (always recomputed from the usage ledger) into one
of four bands and reshapes a policy's candidate chain accordingly:

  normal     spend < warning            chain unchanged
  warning    warning <= spend < degrade cheaper vision sibling / expert text
                                        model for complex work / free model first
  degrade    degrade <= spend < limit   free model only, plus one paid attempt
                                        for complex work if the remainder covers it
  exhausted  spend >= limit             free model only

Each band is strictly more conservative than the one before it. All
substitutes come from the model registry, and image-bearing requests keep
vision-capable candidates ahead of text-only ones.
"""

from typing import List, Optional

from aidispatch.core.exceptions import LedgerUnavailableError
from aidispatch.core.logging import get_logger
from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.policy import BudgetControls, TaskPolicy
from aidispatch.models.routing import BudgetBand, BudgetState, ChainDecision, DispatchSignals
from aidispatch.routing.model_registry import ModelRegistry
from aidispatch.storage.usage_ledger import UsageLedger

logger = get_logger(__name__)

WARNING_MESSAGE = "Today's AI budget is {pct:.0f}% used; switched to economy mode."
DEGRADE_MESSAGE = "Today's AI budget is almost used up ({pct:.0f}%); switched to the free model."
EXHAUSTED_MESSAGE = (
    "Today's AI budget is exhausted; switched to the free model. "
    "The budget resets at the next day boundary (00:00 UTC)."
)
TEXT_ONLY_MESSAGE = "Image analysis is not available within today's budget; the text description was used instead."


def _dedupe(model_ids: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for model_id in model_ids:
        if model_id not in seen:
            seen.add(model_id)
            ordered.append(model_id)
    return ordered


class BudgetController:
    def __init__(self, ledger: UsageLedger, registry: ModelRegistry, controls: BudgetControls):
        self._ledger = ledger
        self._registry = registry
        self.controls = controls

    async def budget_state(self) -> BudgetState:
        try:
            spent = await self._ledger.total_spent_today()
        except LedgerUnavailableError as e:
            # Spend unknown: behave as if the budget were exhausted.
            logger.warning("budget_state_unavailable", error=e.message)
            spent = self.controls.daily_limit
        return BudgetState(
            date=self._ledger.today(),
            total_spent=spent,
            daily_limit=self.controls.daily_limit,
            warning_fraction=self.controls.warning_fraction,
            degrade_fraction=self.controls.degrade_fraction,
        )

    async def adjust_chain(self, policy: TaskPolicy, signals: DispatchSignals) -> ChainDecision:
        state = await self.budget_state()
        constraints: List[str] = []
        chain = await self._apply_caps(policy, constraints)
        band = state.band
        warning: Optional[str] = None

        if band == BudgetBand.NORMAL:
            model_ids = chain
        elif band == BudgetBand.WARNING:
            model_ids = self._warning_chain(chain, signals, constraints)
            if model_ids != chain:
                warning = WARNING_MESSAGE.format(pct=state.spend_fraction * 100)
        elif band == BudgetBand.DEGRADE:
            model_ids = self._degrade_chain(chain, signals, state, constraints)
            warning = DEGRADE_MESSAGE.format(pct=state.spend_fraction * 100)
        else:
            free = self._free_choice(chain)
            model_ids = [free.model_id] if free else []
            constraints.append("budget_exhausted_free_only")
            warning = EXHAUSTED_MESSAGE

        model_ids = _dedupe(model_ids)

        text_only = False
        if signals.has_images:
            vision = [m for m in model_ids if self._registry.supports_vision(m)]
            if vision:
                model_ids = vision + [m for m in model_ids if m not in vision]
            elif model_ids:
                text_only = True
                constraints.append("images_text_only")
                if band != BudgetBand.NORMAL:
                    warning = f"{warning} {TEXT_ONLY_MESSAGE}" if warning else TEXT_ONLY_MESSAGE

        decision = ChainDecision(
            model_ids=model_ids,
            band=band,
            degraded=band in (BudgetBand.DEGRADE, BudgetBand.EXHAUSTED) or model_ids != chain,
            warning=warning,
            text_only=text_only,
            constraints=constraints,
            budget=state,
        )
        logger.info(
            "budget_chain_adjusted",
            task_category=policy.task_category,
            band=band.value,
            spent=round(state.total_spent, 4),
            limit=state.daily_limit,
            chain=model_ids,
            degraded=decision.degraded,
            text_only=text_only,
        )
        return decision

    # ── Pre-filter: per-model daily caps and per-policy quota ───────────────

    async def _apply_caps(self, policy: TaskPolicy, constraints: List[str]) -> List[str]:
        chain = list(policy.chain)
        try:
            if policy.daily_quota is not None:
                used = await self._ledger.requests_today(policy.primary_model_id)
                if used >= policy.daily_quota:
                    chain = [m for m in chain if m != policy.primary_model_id]
                    constraints.append(f"policy_quota:{policy.primary_model_id}")

            allowed = []
            for model_id in chain:
                descriptor = self._registry.find(model_id)
                if descriptor is not None and descriptor.daily_request_cap is not None:
                    if await self._ledger.requests_today(model_id) >= descriptor.daily_request_cap:
                        constraints.append(f"daily_cap:{model_id}")
                        continue
                allowed.append(model_id)
        except LedgerUnavailableError as e:
            logger.warning("budget_caps_unavailable", error=e.message)
            return list(policy.chain)
        return allowed

    # ── Band rules ──────────────────────────────────────────────────────────

    def _known(self, chain: List[str]) -> List[ModelDescriptor]:
        return [d for d in (self._registry.find(m) for m in chain) if d is not None]

    def _free_choice(self, chain: List[str]) -> Optional[ModelDescriptor]:
        in_chain = [d for d in self._known(chain) if d.is_free]
        if in_chain:
            return in_chain[0]
        return self._registry.cheapest(self._registry.free_models())

    def _warning_chain(
        self, chain: List[str], signals: DispatchSignals, constraints: List[str]
    ) -> List[str]:
        known = self._known(chain)
        primary = self._registry.find(chain[0]) if chain else None

        if signals.has_images and primary is not None and primary.supports_vision:
            cheaper = [
                d for d in known[1:]
                if d.supports_vision and d.cost_per_call_estimate < primary.cost_per_call_estimate
            ]
            if not cheaper:
                return chain
            sibling = cheaper[0]
            constraints.append(f"budget_vision_sibling:{sibling.model_id}")
            return [sibling.model_id] + [m for m in chain if m not in (primary.model_id, sibling.model_id)]

        # Paid vision models are the top tier; without images they are never worth it here.
        rest = [
            m for m in chain
            if signals.has_images or not (self._registry.supports_vision(m) and m not in self._free_ids())
        ]
        free = self._free_choice(chain)

        if signals.is_complex:
            paid_text = [d for d in known if not d.is_free and not d.supports_vision]
            if not paid_text:
                paid_text = self._registry.paid_models(vision=False)
            if paid_text:
                expert = max(paid_text, key=lambda d: d.cost_per_call_estimate)
                constraints.append(f"budget_expert:{expert.model_id}")
                lead = [expert.model_id] + ([free.model_id] if free else [])
                return _dedupe(lead + rest)

        if free is None:
            return rest
        constraints.append(f"budget_prefer_free:{free.model_id}")
        return _dedupe([free.model_id] + rest)

    def _degrade_chain(
        self,
        chain: List[str],
        signals: DispatchSignals,
        state: BudgetState,
        constraints: List[str],
    ) -> List[str]:
        model_ids: List[str] = []
        if signals.is_complex:
            pool = self._registry.paid_models(vision=True if signals.has_images else False)
            cheapest = self._registry.cheapest(pool)
            if cheapest is not None and state.remaining > cheapest.cost_per_call_estimate:
                model_ids.append(cheapest.model_id)
                constraints.append(f"budget_single_paid:{cheapest.model_id}")

        free = self._free_choice(chain)
        if free is not None:
            model_ids.append(free.model_id)
        constraints.append("budget_degrade_free")
        return model_ids

    def _free_ids(self) -> set:
        return {d.model_id for d in self._registry.free_models()}
