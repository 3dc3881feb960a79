from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class MessageContentPart(BaseModel):
    type: Literal["text", "image_url"]
    text: Optional[str] = None
    image_url: Optional[Dict[str, str]] = None


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[MessageContentPart], None] = None

    def text_content(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return " ".join(p.text or "" for p in self.content if p.type == "text")
        return ""

    def to_wire(self) -> Dict[str, Any]:
        if isinstance(self.content, list):
            return {"role": self.role, "content": [p.model_dump(exclude_none=True) for p in self.content]}
        return {"role": self.role, "content": self.content or ""}


class DispatchOptions(BaseModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_override: Optional[float] = None
    # Caller hints; inferred from the messages when absent
    complexity: Optional[Literal["low", "medium", "high"]] = None
    urgent: Optional[bool] = None


class DispatchRequest(BaseModel):
    task_category: str
    messages: List[ChatMessage]
    images: List[str] = Field(default_factory=list)    # opaque references
    options: DispatchOptions = DispatchOptions()
    request_id: Optional[str] = None
