from typing import List, Optional

from pydantic import BaseModel, Field

from aidispatch.models.result import StructuredResult
from aidispatch.models.routing import DispatchAttempt


class UsageInfo(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class BackendReply(BaseModel):
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class DispatchResponse(BaseModel):
    success: bool
    request_id: str = ""
    task_category: str = ""
    content: Optional[StructuredResult] = None
    model_used: Optional[str] = None
    usage: UsageInfo = UsageInfo()
    used_vision: bool = False
    from_cache: bool = False
    degraded: bool = False
    warning: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fallback_message: Optional[str] = None
    budget_band: Optional[str] = None
    vision_fallback_reason: Optional[str] = None
    attempts: List[DispatchAttempt] = Field(default_factory=list)
