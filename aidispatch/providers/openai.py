from typing import List, Optional

import openai as openai_lib

from aidispatch.core.exceptions import (
    BackendConfigError,
    BackendError,
    BackendRateLimitedError,
    BackendTransientError,
)
from aidispatch.core.logging import get_logger
from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.request import ChatMessage, DispatchOptions
from aidispatch.models.response import BackendReply
from aidispatch.providers.base import BaseBackend

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9

# Status codes meaning "this backend cannot serve this model at all"
CONFIG_STATUSES = {401, 403, 404}


def _retry_after(error: openai_lib.APIStatusError) -> Optional[float]:
    try:
        value = error.response.headers.get("retry-after")
        return float(value) if value is not None else None
    except (AttributeError, TypeError, ValueError):
        return None


def classify_status_error(error: openai_lib.APIStatusError, model_id: str) -> BackendError:
    status = error.status_code
    if status == 429:
        return BackendRateLimitedError(str(error), model_id, status, retry_after=_retry_after(error))
    if status in CONFIG_STATUSES:
        return BackendConfigError(str(error), model_id, status)
    # 400 (e.g. rejected image payload), 5xx and anything else: try the next candidate
    return BackendTransientError(str(error), model_id, status)


class OpenAICompatibleBackend(BaseBackend):
    """Any endpoint speaking the OpenAI chat-completions API (DashScope, OpenAI, vLLM)."""

    def __init__(self, api_key: str, base_url: Optional[str] = None, provider_name: str = "openai"):
        self.provider_name = provider_name
        self.client = openai_lib.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            max_retries=0,   # the dispatcher's fallback chain is the retry mechanism
        )

    def _build_messages(self, messages: List[ChatMessage]) -> list:
        return [msg.to_wire() for msg in messages]

    async def complete(
        self, model: ModelDescriptor, messages: List[ChatMessage], options: DispatchOptions
    ) -> BackendReply:
        try:
            kwargs = dict(
                model=model.model,
                messages=self._build_messages(messages),
                max_tokens=options.max_tokens or model.max_tokens,
                temperature=options.temperature if options.temperature is not None else DEFAULT_TEMPERATURE,
                top_p=DEFAULT_TOP_P,
                stream=False,
            )
            response = await self.client.chat.completions.create(**kwargs)
        except openai_lib.APIStatusError as e:
            raise classify_status_error(e, model.model_id) from e
        except (openai_lib.APITimeoutError, openai_lib.APIConnectionError) as e:
            raise BackendTransientError(str(e), model.model_id) from e
        except openai_lib.OpenAIError as e:
            raise BackendTransientError(str(e), model.model_id) from e

        if not response.choices:
            raise BackendTransientError("backend returned no choices", model.model_id)

        usage = response.usage
        return BackendReply(
            text=response.choices[0].message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )

    async def health_check(self) -> bool:
        try:
            await self.client.models.list()
            return True
        except Exception:
            return False
