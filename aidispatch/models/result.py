from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ParseStrategy = Literal["json", "fenced", "regex", "fallback"]


class StructuredResult(BaseModel):
    """Normalized backend output.

    ``strategy`` records which parse tier produced the value; ``is_fallback``
    is set whenever the structure was reconstructed from prose rather than
    read from a JSON object the backend emitted.
    """

    strategy: ParseStrategy
    is_fallback: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    needs_review: bool = False
    finding: str = ""
    count: int = 0
    severity: str = ""
    reasoning: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    raw_text: Optional[str] = None
