from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PolicyConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    requires_images: Optional[bool] = None     # None = images irrelevant
    complexity: Optional[str] = None           # "low|medium" / "high"; None = any
    keywords: List[str] = Field(default_factory=list)
    urgency: Optional[str] = None


class TaskPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_category: str
    primary_model_id: str
    fallback_model_ids: List[str] = Field(default_factory=list)
    timeout_seconds: float = 10.0
    applicability: PolicyConditions = PolicyConditions()
    daily_quota: Optional[int] = None
    vision_variant: Optional[str] = None       # sibling category used when images are present
    text_variant: Optional[str] = None         # sibling category used when images are unusable
    description: str = ""

    @property
    def chain(self) -> List[str]:
        return [self.primary_model_id] + list(self.fallback_model_ids)

    @property
    def is_complex_policy(self) -> bool:
        return self.applicability.complexity == "high"


class BudgetControls(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_limit: float = 10.0
    warning_fraction: float = 0.70    # above this, prefer cheaper substitutes
    degrade_fraction: float = 0.90    # above this, free model only (one paid attempt for complex work)

    @model_validator(mode="after")
    def _monotonic_bands(self) -> "BudgetControls":
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        if not 0.0 < self.warning_fraction < self.degrade_fraction <= 1.0:
            raise ValueError(
                "budget bands must satisfy 0 < warning_fraction < degrade_fraction <= 1"
            )
        return self
