import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    CONFIG_MISSING = "config_missing"


class BudgetBand(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    DEGRADE = "degrade"
    EXHAUSTED = "exhausted"


class DispatchSignals(BaseModel):
    has_images: bool = False
    image_count: int = 0
    is_complex: bool = False
    is_urgent: bool = False
    estimated_tokens: int = 0
    has_long_text: bool = False

    def without_images(self) -> "DispatchSignals":
        return self.model_copy(update={"has_images": False, "image_count": 0})


class BudgetState(BaseModel):
    date: dt.date
    total_spent: float
    daily_limit: float
    warning_fraction: float = 0.70
    degrade_fraction: float = 0.90

    @property
    def spend_fraction(self) -> float:
        return self.total_spent / self.daily_limit

    @property
    def remaining(self) -> float:
        return self.daily_limit - self.total_spent

    @property
    def band(self) -> BudgetBand:
        fraction = self.spend_fraction
        if fraction < self.warning_fraction:
            return BudgetBand.NORMAL
        if fraction < self.degrade_fraction:
            return BudgetBand.WARNING
        if fraction < 1.0:
            return BudgetBand.DEGRADE
        return BudgetBand.EXHAUSTED


class ChainDecision(BaseModel):
    model_ids: List[str] = Field(default_factory=list)
    band: BudgetBand = BudgetBand.NORMAL
    degraded: bool = False
    warning: Optional[str] = None
    text_only: bool = False          # no vision-capable candidate is affordable
    constraints: List[str] = Field(default_factory=list)
    budget: Optional[BudgetState] = None


class DispatchAttempt(BaseModel):
    model_id: str
    outcome: AttemptOutcome
    latency_ms: int = 0
    error: Optional[str] = None
