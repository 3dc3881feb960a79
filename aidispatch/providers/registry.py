import asyncio
from typing import Dict, Optional

from aidispatch.core.config import Settings
from aidispatch.core.logging import get_logger
from aidispatch.providers.base import BaseBackend
from aidispatch.providers.openai import OpenAICompatibleBackend

logger = get_logger(__name__)


class BackendRegistry:
    """Provider name → backend adapter. A provider without credentials is simply absent."""

    def __init__(self, backends: Optional[Dict[str, BaseBackend]] = None):
        self._backends: Dict[str, BaseBackend] = dict(backends or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackendRegistry":
        registry = cls()
        if settings.qwen_api_key:
            registry.register(
                "dashscope",
                OpenAICompatibleBackend(
                    api_key=settings.qwen_api_key,
                    base_url=settings.qwen_base_url,
                    provider_name="dashscope",
                ),
            )
        if settings.openai_api_key:
            registry.register(
                "openai",
                OpenAICompatibleBackend(
                    api_key=settings.openai_api_key,
                    base_url=settings.openai_base_url or None,
                    provider_name="openai",
                ),
            )
        if not registry.available_providers():
            logger.warning("no_backends_configured")
        return registry

    def register(self, provider_name: str, backend: BaseBackend) -> None:
        self._backends[provider_name] = backend
        logger.info("backend_registered", provider=provider_name)

    def get(self, provider_name: str) -> Optional[BaseBackend]:
        return self._backends.get(provider_name)

    def available_providers(self) -> list[str]:
        return list(self._backends.keys())

    async def health_check_all(self) -> Dict[str, bool]:
        async def _check(name: str, backend: BaseBackend) -> tuple[str, bool]:
            try:
                ok = await asyncio.wait_for(backend.health_check(), timeout=3.0)
                return name, ok
            except Exception:
                return name, False

        checks = await asyncio.gather(*[_check(n, b) for n, b in self._backends.items()])
        return dict(checks)
