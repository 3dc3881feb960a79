import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aidispatch.core.exceptions import (
    BackendConfigError,
    BackendError,
    BackendRateLimitedError,
    BudgetExhaustedError,
    ChainExhaustedError,
    DispatchCoreError,
    UnknownCategoryError,
)
from aidispatch.core.logging import get_logger
from aidispatch.imaging.pipeline import (
    NO_VISION_SUPPORT,
    RESOLUTION_FAILED,
    ImageBatch,
    ImagePipeline,
    PreparedContent,
)
from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.policy import TaskPolicy
from aidispatch.models.request import DispatchRequest
from aidispatch.models.response import BackendReply, DispatchResponse, UsageInfo
from aidispatch.models.result import StructuredResult
from aidispatch.models.routing import (
    AttemptOutcome,
    ChainDecision,
    DispatchAttempt,
    DispatchSignals,
)
from aidispatch.observability.audit_log import AuditLogger
from aidispatch.parsing.response_parser import ResponseParser
from aidispatch.providers.registry import BackendRegistry
from aidispatch.routing import analyzer
from aidispatch.routing.budget import BudgetController
from aidispatch.routing.model_registry import ModelRegistry
from aidispatch.routing.policy import TaskPolicyTable
from aidispatch.storage.response_cache import ResponseCache
from aidispatch.storage.usage_ledger import UsageLedger

logger = get_logger(__name__)

DEFAULT_FALLBACK_MESSAGE = "Sorry, the AI service is temporarily unavailable. Please try again later."

VISION_FALLBACK_WARNINGS = {
    NO_VISION_SUPPORT: "The supplied images could not be analysed by the selected model; the text description was used.",
    RESOLUTION_FAILED: "The supplied images could not be loaded; the text description was used.",
}


class Dispatcher:
    """
    Central orchestrator:
    SignalAnalyzer → ResponseCache → TaskPolicyTable → BudgetController →
    ImagePipeline → Backend attempts (strictly sequential) → ResponseParser

    Attempt outcomes drive the next step:
      success         record usage, parse, cache, return
      rate_limited    fixed backoff, then the next candidate
      transient       the next candidate immediately
      config_missing  the next candidate immediately
    Running out of candidates returns an "exhausted" response carrying the
    configured fallback message. Terminal outcomes are returned, not raised.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        policies: TaskPolicyTable,
        backends: BackendRegistry,
        budget: BudgetController,
        images: ImagePipeline,
        cache: ResponseCache,
        ledger: UsageLedger,
        parser: Optional[ResponseParser] = None,
        rate_limit_backoff_seconds: float = 2.0,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
        complex_keywords: Sequence[str] = analyzer.DEFAULT_COMPLEX_KEYWORDS,
        urgent_keywords: Sequence[str] = analyzer.DEFAULT_URGENT_KEYWORDS,
        long_text_tokens: int = 3000,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.registry = registry
        self.policies = policies
        self.backends = backends
        self.budget = budget
        self.images = images
        self.cache = cache
        self.ledger = ledger
        self.parser = parser or ResponseParser()
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds
        self.fallback_message = fallback_message
        self.complex_keywords = list(complex_keywords)
        self.urgent_keywords = list(urgent_keywords)
        self.long_text_tokens = long_text_tokens
        self.audit_logger = audit_logger

    async def dispatch(self, request: DispatchRequest) -> DispatchResponse:
        request_id = request.request_id or f"aid-{uuid.uuid4().hex[:12]}"
        start_ms = int(time.time() * 1000)
        response = await self._dispatch(request, request_id)
        latency_ms = int(time.time() * 1000) - start_ms
        if self.audit_logger is not None:
            await self.audit_logger.log(self.audit_logger.build_record(request, response, latency_ms))
        return response

    async def _dispatch(self, request: DispatchRequest, request_id: str) -> DispatchResponse:
        # Step 1: signals (free, heuristic)
        signals = self._analyze(request)
        category = self.policies.rewrite(request.task_category, signals)
        logger.info(
            "dispatch_signals",
            request_id=request_id,
            requested_category=request.task_category,
            category=category,
            images=signals.image_count,
            complex=signals.is_complex,
            urgent=signals.is_urgent,
            tokens=signals.estimated_tokens,
        )

        # Step 2: cache
        cache_key = self.cache.key(request.messages, category, request.images)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            logger.info("dispatch_cache_hit", request_id=request_id, category=category)
            return DispatchResponse(
                success=True,
                request_id=request_id,
                task_category=category,
                content=StructuredResult.model_validate(cached["content"]),
                model_used=cached.get("model_used"),
                used_vision=bool(cached.get("used_vision", False)),
                from_cache=True,
            )

        # Step 3: policy (no default for unknown categories)
        try:
            policy = self.policies.resolve(category)
        except UnknownCategoryError as e:
            logger.warning("dispatch_unknown_category", request_id=request_id, category=category)
            return self._failure(request_id, category, e)

        # Step 4: budget
        decision = await self.budget.adjust_chain(policy, signals)
        warnings = [decision.warning] if decision.warning else []
        vision_fallback_reason: Optional[str] = None

        if decision.text_only:
            policy, decision = await self._switch_to_text(policy, signals, warnings)
            vision_fallback_reason = NO_VISION_SUPPORT

        if not decision.model_ids:
            logger.warning(
                "dispatch_budget_exhausted",
                request_id=request_id,
                category=policy.task_category,
                spent=decision.budget.total_spent if decision.budget else None,
            )
            return self._failure(
                request_id,
                policy.task_category,
                BudgetExhaustedError("no model is affordable within today's budget"),
                decision=decision,
                warnings=warnings,
            )

        # Step 5: images, resolved once for every attempt
        timeout = request.options.timeout_override or policy.timeout_seconds
        batch = self.images.batch(request.images, timeout)
        vision_caps = [
            d.max_images or len(request.images)
            for d in (self.registry.find(m) for m in decision.model_ids)
            if d is not None and d.supports_vision
        ]
        if request.images and vision_caps:
            await batch.resolve(limit=max(vision_caps))
            if not batch.usable:
                policy, decision = await self._switch_to_text(policy, signals, warnings)
                timeout = request.options.timeout_override or policy.timeout_seconds
                vision_fallback_reason = RESOLUTION_FAILED
                if not decision.model_ids:
                    return self._failure(
                        request_id,
                        policy.task_category,
                        BudgetExhaustedError("no model is affordable within today's budget"),
                        decision=decision,
                        warnings=warnings,
                    )

        # Step 6: attempts
        return await self._run_chain(
            request, request_id, policy, decision, batch, timeout, cache_key,
            warnings, vision_fallback_reason,
        )

    def _analyze(self, request: DispatchRequest) -> DispatchSignals:
        return analyzer.analyze(
            request,
            self.policies.find(request.task_category),
            complex_keywords=self.complex_keywords,
            urgent_keywords=self.urgent_keywords,
            long_text_tokens=self.long_text_tokens,
        )

    async def _text_chain(
        self, policy: TaskPolicy, signals: DispatchSignals
    ) -> Tuple[TaskPolicy, ChainDecision]:
        text_policy = self.policies.resolve(self.policies.text_category(policy.task_category))
        return text_policy, await self.budget.adjust_chain(text_policy, signals.without_images())

    async def _switch_to_text(
        self, policy: TaskPolicy, signals: DispatchSignals, warnings: List[str]
    ) -> Tuple[TaskPolicy, ChainDecision]:
        text_policy, decision = await self._text_chain(policy, signals)
        if decision.warning and decision.warning not in warnings:
            warnings.append(decision.warning)
        logger.info(
            "dispatch_vision_fallback",
            category=policy.task_category,
            text_category=text_policy.task_category,
            chain=decision.model_ids,
        )
        return text_policy, decision

    async def _run_chain(
        self,
        request: DispatchRequest,
        request_id: str,
        policy: TaskPolicy,
        decision: ChainDecision,
        batch: ImageBatch,
        timeout: float,
        cache_key: str,
        warnings: List[str],
        vision_fallback_reason: Optional[str],
    ) -> DispatchResponse:
        attempts: List[DispatchAttempt] = []
        last_error: Optional[str] = None
        chain = decision.model_ids

        for idx, model_id in enumerate(chain):
            is_last = idx == len(chain) - 1
            descriptor = self.registry.find(model_id)
            backend = self.backends.get(descriptor.provider) if descriptor else None
            if descriptor is None or backend is None:
                last_error = (
                    f"model '{model_id}' is not configured"
                    if descriptor is None
                    else f"no backend registered for provider '{descriptor.provider}'"
                )
                attempts.append(
                    DispatchAttempt(model_id=model_id, outcome=AttemptOutcome.CONFIG_MISSING, error=last_error)
                )
                logger.warning("dispatch_attempt_skipped", request_id=request_id, model=model_id, error=last_error)
                continue

            prepared = await self.images.prepare(request.messages, batch, descriptor)
            outcome, reply, error, latency_ms = await self._attempt(
                backend, descriptor, prepared, request, timeout
            )
            attempts.append(
                DispatchAttempt(model_id=model_id, outcome=outcome, latency_ms=latency_ms, error=error)
            )

            if outcome == AttemptOutcome.SUCCESS:
                return await self._succeed(
                    request, request_id, policy, decision, descriptor, prepared, reply,
                    attempts, cache_key, warnings, vision_fallback_reason,
                )

            last_error = error
            logger.warning(
                "dispatch_attempt_failed",
                request_id=request_id,
                model=model_id,
                outcome=outcome.value,
                error=error,
                latency_ms=latency_ms,
            )
            if outcome == AttemptOutcome.RATE_LIMITED and not is_last and self.rate_limit_backoff_seconds > 0:
                await asyncio.sleep(self.rate_limit_backoff_seconds)

        logger.error(
            "dispatch_exhausted",
            request_id=request_id,
            category=policy.task_category,
            tried=[a.model_id for a in attempts],
            last_error=last_error,
        )
        return self._failure(
            request_id,
            policy.task_category,
            ChainExhaustedError(
                last_error or "no candidate model could serve the request",
                tried=[a.model_id for a in attempts],
            ),
            decision=decision,
            warnings=warnings,
            attempts=attempts,
            vision_fallback_reason=vision_fallback_reason,
        )

    async def _attempt(
        self,
        backend,
        descriptor: ModelDescriptor,
        prepared: PreparedContent,
        request: DispatchRequest,
        timeout: float,
    ) -> Tuple[AttemptOutcome, Optional[BackendReply], Optional[str], int]:
        started = time.monotonic()
        outcome = AttemptOutcome.SUCCESS
        reply: Optional[BackendReply] = None
        error: Optional[str] = None
        try:
            reply = await asyncio.wait_for(
                backend.complete(descriptor, prepared.messages, request.options),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome, error = AttemptOutcome.TRANSIENT, f"timed out after {timeout:.1f}s"
        except BackendRateLimitedError as e:
            outcome, error = AttemptOutcome.RATE_LIMITED, e.message
        except BackendConfigError as e:
            outcome, error = AttemptOutcome.CONFIG_MISSING, e.message
        except BackendError as e:
            outcome, error = AttemptOutcome.TRANSIENT, e.message
        latency_ms = int((time.monotonic() - started) * 1000)
        return outcome, reply, error, latency_ms

    async def _succeed(
        self,
        request: DispatchRequest,
        request_id: str,
        policy: TaskPolicy,
        decision: ChainDecision,
        descriptor: ModelDescriptor,
        prepared: PreparedContent,
        reply: BackendReply,
        attempts: List[DispatchAttempt],
        cache_key: str,
        warnings: List[str],
        vision_fallback_reason: Optional[str],
    ) -> DispatchResponse:
        cost = descriptor.cost_per_call_estimate
        await self.ledger.record(descriptor.model_id, reply.total_tokens, cost)

        content = self.parser.parse(reply.text, policy.task_category)

        if request.images and not prepared.used_vision:
            vision_fallback_reason = vision_fallback_reason or prepared.degrade_reason
            notice = VISION_FALLBACK_WARNINGS.get(vision_fallback_reason or "")
            if notice and notice not in warnings:
                warnings.append(notice)

        await self.cache.put(
            cache_key,
            {
                "content": content.model_dump(),
                "model_used": descriptor.model_id,
                "used_vision": prepared.used_vision,
            },
            self.cache.ttl_for(request.images),
        )

        logger.info(
            "dispatch_success",
            request_id=request_id,
            category=policy.task_category,
            model=descriptor.model_id,
            attempts=len(attempts),
            latency_ms=attempts[-1].latency_ms,
            used_vision=prepared.used_vision,
            parse_strategy=content.strategy,
            cost=cost,
        )
        return DispatchResponse(
            success=True,
            request_id=request_id,
            task_category=policy.task_category,
            content=content,
            model_used=descriptor.model_id,
            usage=UsageInfo(
                prompt_tokens=reply.prompt_tokens,
                completion_tokens=reply.completion_tokens,
                total_tokens=reply.total_tokens,
                cost=cost,
            ),
            used_vision=prepared.used_vision,
            degraded=decision.degraded,
            warning=" ".join(warnings) or None,
            budget_band=decision.band.value,
            vision_fallback_reason=vision_fallback_reason,
            attempts=attempts,
        )

    def _failure(
        self,
        request_id: str,
        category: str,
        error: DispatchCoreError,
        decision: Optional[ChainDecision] = None,
        warnings: Optional[List[str]] = None,
        attempts: Optional[List[DispatchAttempt]] = None,
        vision_fallback_reason: Optional[str] = None,
    ) -> DispatchResponse:
        return DispatchResponse(
            success=False,
            request_id=request_id,
            task_category=category,
            error=error.message,
            error_code=error.error_code,
            fallback_message=self.fallback_message,
            degraded=decision is not None,
            warning=" ".join(warnings or []) or None,
            budget_band=decision.band.value if decision else None,
            vision_fallback_reason=vision_fallback_reason,
            attempts=attempts or [],
        )

    # ── Introspection ───────────────────────────────────────────────────────

    async def worst_case_latency(self, request: DispatchRequest) -> float:
        """
        Upper bound in seconds for dispatching `request` right now.

        Uses the budget-adjusted chain and the request's timeout override:
        every candidate times out and every gap is a rate-limit backoff. With
        images, image resolution (at most two per-image timeouts) is added and
        the text chain that takes over when no image loads is bounded too.
        Raises UnknownCategoryError for a category with no policy.
        """
        signals = self._analyze(request)
        policy = self.policies.resolve(self.policies.rewrite(request.task_category, signals))
        decision = await self.budget.adjust_chain(policy, signals)
        if decision.text_only:
            policy, decision = await self._text_chain(policy, signals)
        timeout = request.options.timeout_override or policy.timeout_seconds
        bound = self._chain_latency(len(decision.model_ids), timeout)

        if request.images and any(self.registry.supports_vision(m) for m in decision.model_ids):
            text_policy, text_decision = await self._text_chain(policy, signals)
            text_timeout = request.options.timeout_override or text_policy.timeout_seconds
            text_bound = self._chain_latency(len(text_decision.model_ids), text_timeout)
            bound = 2 * self.images.image_timeout(timeout) + max(bound, text_bound)
        return bound

    def _chain_latency(self, candidates: int, timeout: float) -> float:
        return candidates * timeout + max(candidates - 1, 0) * self.rate_limit_backoff_seconds

    async def aclose(self) -> None:
        """Release the image resolver's HTTP client and any Redis connections."""
        await self.images.aclose()
        await self.cache.aclose()
        await self.ledger.aclose()

    async def usage_stats(self) -> Dict[str, Any]:
        state = await self.budget.budget_state()
        records = await self.ledger.records()
        return {
            "date": state.date.isoformat(),
            "total_spent": round(state.total_spent, 6),
            "daily_limit": state.daily_limit,
            "remaining": round(max(state.remaining, 0.0), 6),
            "spend_fraction": round(state.spend_fraction, 4),
            "budget_band": state.band.value,
            "total_requests": sum(r.request_count for r in records),
            "models": {
                r.model_id: {
                    "requests": r.request_count,
                    "tokens": r.token_count,
                    "cost": round(r.cost_accumulated, 6),
                }
                for r in records
            },
        }

    async def health_check(self) -> Dict[str, Any]:
        provider_health = await self.backends.health_check_all()
        models: Dict[str, Any] = {}
        for descriptor in self.registry.all():
            requests_today = await self.ledger.requests_today(descriptor.model_id)
            under_cap = (
                descriptor.daily_request_cap is None
                or requests_today < descriptor.daily_request_cap
            )
            reachable = provider_health.get(descriptor.provider, False)
            models[descriptor.model_id] = {
                "provider": descriptor.provider,
                "available": reachable and under_cap,
                "requests_today": requests_today,
                "daily_request_cap": descriptor.daily_request_cap,
            }
        return {
            "healthy": any(m["available"] for m in models.values()),
            "providers": provider_health,
            "models": models,
        }
