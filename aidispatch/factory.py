from typing import Optional

from aidispatch.core.config import Settings, get_settings
from aidispatch.core.logging import configure_logging, get_logger
from aidispatch.imaging.pipeline import ImagePipeline
from aidispatch.imaging.resolvers import default_resolver
from aidispatch.models.policy import BudgetControls
from aidispatch.observability.audit_log import AuditLogger
from aidispatch.parsing.response_parser import ResponseParser
from aidispatch.providers.registry import BackendRegistry
from aidispatch.routing.budget import BudgetController
from aidispatch.routing.engine import Dispatcher
from aidispatch.routing.model_registry import ModelRegistry
from aidispatch.routing.policy import TaskPolicyTable
from aidispatch.storage.response_cache import (
    InMemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
)
from aidispatch.storage.usage_ledger import InMemoryUsageStore, RedisUsageStore, UsageLedger

logger = get_logger(__name__)


def build_dispatcher(
    settings: Optional[Settings] = None,
    backends: Optional[BackendRegistry] = None,
) -> Dispatcher:
    """Wire a Dispatcher from settings: catalogs, stores, resolvers and backends."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.json_logs)

    logger.info("startup", env=settings.app_env)

    registry = ModelRegistry.from_yaml(settings.models_config_path)
    policies = TaskPolicyTable.from_yaml(settings.task_policies_path, registry)

    if settings.redis_url:
        ledger = UsageLedger(RedisUsageStore.from_url(settings.redis_url))
        cache_backend = RedisCacheBackend.from_url(settings.redis_url)
    else:
        ledger = UsageLedger(InMemoryUsageStore())
        cache_backend = InMemoryCacheBackend()

    budget = BudgetController(
        ledger,
        registry,
        BudgetControls(
            daily_limit=settings.daily_budget,
            warning_fraction=settings.warning_fraction,
            degrade_fraction=settings.degrade_fraction,
        ),
    )
    images = ImagePipeline(
        default_resolver(max_bytes=settings.image_fetch_max_bytes, local_root=settings.image_local_root),
        resolve_timeout_seconds=settings.image_resolve_timeout_seconds,
    )
    cache = ResponseCache(
        cache_backend,
        ttl_seconds=settings.cache_ttl_seconds,
        vision_ttl_seconds=settings.cache_ttl_vision_seconds,
    )
    backends = backends or BackendRegistry.from_settings(settings)
    audit_logger = AuditLogger(settings.audit_log_path) if settings.audit_log_path else None

    dispatcher = Dispatcher(
        registry=registry,
        policies=policies,
        backends=backends,
        budget=budget,
        images=images,
        cache=cache,
        ledger=ledger,
        parser=ResponseParser(),
        rate_limit_backoff_seconds=settings.rate_limit_backoff_seconds,
        fallback_message=settings.fallback_message,
        complex_keywords=settings.complex_keywords_list,
        urgent_keywords=settings.urgent_keywords_list,
        long_text_tokens=settings.long_text_tokens,
        audit_logger=audit_logger,
    )

    logger.info(
        "components_ready",
        providers=backends.available_providers(),
        models=[m.model_id for m in registry.all()],
        categories=policies.list_categories(),
        storage="redis" if settings.redis_url else "memory",
    )
    return dispatcher
