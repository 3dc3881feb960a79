from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    provider: str
    model: str = ""                      # wire name sent to the backend; defaults to model_id
    supports_vision: bool = False
    max_images: int = 0
    max_image_bytes: int = 10 * 1024 * 1024
    supported_image_formats: List[str] = Field(default_factory=list)   # upper-case, e.g. "JPEG"
    max_tokens: int = 4096
    cost_per_call_estimate: float = 0.0
    daily_request_cap: Optional[int] = None
    tier: str = "fast"                   # free | fast | expert | vision
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_wire_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("model"):
            data = {**data, "model": data.get("model_id", "")}
        return data

    @property
    def is_free(self) -> bool:
        return self.cost_per_call_estimate <= 0.0

    def accepts_format(self, fmt: str) -> bool:
        if not self.supported_image_formats:
            return True
        return fmt.upper() in {f.upper() for f in self.supported_image_formats}
