"""
Shared test fixtures for pytest.

- registry / policies: the shipped YAML catalogs under config/
- ledger / cache: in-memory stores
- FakeBackend: scripted per-model replies or typed errors
- FakeResolver: scripted image resolution
- make_dispatcher: wires a Dispatcher around the fakes
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from aidispatch.core.exceptions import ImageResolutionError
from aidispatch.imaging.pipeline import ImagePipeline
from aidispatch.imaging.resolvers import ImageResolver, ResolvedImage
from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.policy import BudgetControls
from aidispatch.models.request import ChatMessage, DispatchOptions
from aidispatch.models.response import BackendReply
from aidispatch.providers.base import BaseBackend
from aidispatch.providers.registry import BackendRegistry
from aidispatch.routing import analyzer
from aidispatch.routing.budget import BudgetController
from aidispatch.routing.engine import Dispatcher
from aidispatch.routing.model_registry import ModelRegistry
from aidispatch.routing.policy import TaskPolicyTable
from aidispatch.storage.response_cache import InMemoryCacheBackend, ResponseCache
from aidispatch.storage.usage_ledger import InMemoryUsageStore, UsageLedger

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


# ------------------------------------------------------------------ #
# Test doubles
# ------------------------------------------------------------------ #

class FakeBackend(BaseBackend):
    """Backend double: each model id maps to a reply text or an exception instance."""

    provider_name = "dashscope"

    def __init__(
        self,
        script: Optional[Dict[str, Any]] = None,
        default: Any = '{"finding": "ok", "confidence": 0.9}',
        delays: Optional[Dict[str, float]] = None,
    ):
        self.script = dict(script or {})
        self.default = default
        self.delays = dict(delays or {})
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self, model: ModelDescriptor, messages: List[ChatMessage], options: DispatchOptions
    ) -> BackendReply:
        self.calls.append({"model_id": model.model_id, "messages": messages, "options": options})
        if model.model_id in self.delays:
            await asyncio.sleep(self.delays[model.model_id])
        outcome = self.script.get(model.model_id, self.default)
        if isinstance(outcome, BaseException):
            raise outcome
        return BackendReply(text=outcome, prompt_tokens=10, completion_tokens=5, total_tokens=15)

    async def health_check(self) -> bool:
        return True

    @property
    def called_models(self) -> List[str]:
        return [c["model_id"] for c in self.calls]


class FakeResolver(ImageResolver):
    """Resolves refs from a table; anything else fails."""

    def __init__(self, images: Optional[Dict[str, ResolvedImage]] = None):
        self.images = dict(images or {})
        self.calls: List[str] = []

    async def resolve(self, ref: str) -> ResolvedImage:
        self.calls.append(ref)
        image = self.images.get(ref)
        if image is None:
            raise ImageResolutionError("not found", ref=ref)
        return image


class BrokenResolver(FakeResolver):
    """Like FakeResolver, but unknown refs raise an untyped OSError."""

    async def resolve(self, ref: str) -> ResolvedImage:
        self.calls.append(ref)
        if ref in self.images:
            return self.images[ref]
        raise OSError(36, "File name too long")


def jpeg(ref: str, size_bytes: int = 2048) -> ResolvedImage:
    return ResolvedImage(ref=ref, url=f"data:image/jpeg;base64,{ref}", mime_type="image/jpeg", size_bytes=size_bytes)


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True)
def _offline_tokenizer(monkeypatch):
    """Token estimates fall back to chars / 4 so tests never fetch an encoding."""
    monkeypatch.setattr(analyzer, "_tokenizer_unavailable", True)


@pytest.fixture
def registry() -> ModelRegistry:
    return ModelRegistry.from_yaml(str(CONFIG_DIR / "models.yaml"))


@pytest.fixture
def policies(registry) -> TaskPolicyTable:
    return TaskPolicyTable.from_yaml(str(CONFIG_DIR / "task_policies.yaml"), registry)


@pytest.fixture
def ledger() -> UsageLedger:
    return UsageLedger(InMemoryUsageStore())


@pytest.fixture
def controls() -> BudgetControls:
    return BudgetControls(daily_limit=10.0, warning_fraction=0.70, degrade_fraction=0.90)


@pytest.fixture
def budget(ledger, registry, controls) -> BudgetController:
    return BudgetController(ledger, registry, controls)


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache(InMemoryCacheBackend())


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver({"img-1": jpeg("img-1"), "img-2": jpeg("img-2")})


@pytest.fixture
def make_dispatcher(registry, policies, ledger, budget, cache, resolver):
    def _make(
        backend: BaseBackend,
        registry_override: Optional[ModelRegistry] = None,
        policies_override: Optional[TaskPolicyTable] = None,
        budget_override: Optional[BudgetController] = None,
        **kwargs: Any,
    ) -> Dispatcher:
        reg = registry_override or registry
        kwargs.setdefault("rate_limit_backoff_seconds", 0.0)
        return Dispatcher(
            registry=reg,
            policies=policies_override or policies,
            backends=BackendRegistry({"dashscope": backend}),
            budget=budget_override or budget,
            images=ImagePipeline(resolver, resolve_timeout_seconds=1.0),
            cache=cache,
            ledger=ledger,
            **kwargs,
        )

    return _make


async def spend(ledger: UsageLedger, amount: float, model_id: str = "qwen-turbo") -> None:
    """Book `amount` of today's budget against model_id in one call."""
    await ledger.record(model_id, tokens=0, cost=amount)
