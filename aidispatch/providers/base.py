from abc import ABC, abstractmethod
from typing import List

from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.request import ChatMessage, DispatchOptions
from aidispatch.models.response import BackendReply


class BaseBackend(ABC):
    """Abstract base class for all model backend adapters.

    complete() returns the reply text and token counts, or raises one of the
    typed BackendError subclasses so the dispatcher can pick the next step.
    """

    provider_name: str = ""

    @abstractmethod
    async def complete(
        self, model: ModelDescriptor, messages: List[ChatMessage], options: DispatchOptions
    ) -> BackendReply:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Returns True if the backend is reachable."""
        ...
