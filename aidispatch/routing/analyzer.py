from typing import List, Optional, Sequence

import tiktoken

from aidispatch.models.policy import TaskPolicy
from aidispatch.models.request import DispatchRequest
from aidispatch.models.routing import DispatchSignals

DEFAULT_COMPLEX_KEYWORDS = [
    "死亡", "批量", "疑难", "鉴别诊断", "突然", "大量", "剖析",
    "death", "mortality", "autopsy", "differential", "sudden", "outbreak",
]
DEFAULT_URGENT_KEYWORDS = ["紧急", "急救", "urgent", "emergency", "asap"]

_tokenizer: Optional[tiktoken.Encoding] = None
# Set once the encoding could not be loaded (offline hosts); estimates fall back to chars / 4
_tokenizer_unavailable = False


def _get_tokenizer() -> tiktoken.Encoding:
    global _tokenizer
    if _tokenizer is None:
        _tokenizer = tiktoken.get_encoding("cl100k_base")
    return _tokenizer


def _estimate_tokens(text: str) -> int:
    global _tokenizer_unavailable
    if not _tokenizer_unavailable:
        try:
            return len(_get_tokenizer().encode(text))
        except Exception:
            _tokenizer_unavailable = True
    return len(text) // 4


def _user_text(request: DispatchRequest) -> str:
    return " ".join(m.text_content() for m in request.messages if m.role == "user")


def analyze(
    request: DispatchRequest,
    policy: Optional[TaskPolicy] = None,
    complex_keywords: Sequence[str] = DEFAULT_COMPLEX_KEYWORDS,
    urgent_keywords: Sequence[str] = DEFAULT_URGENT_KEYWORDS,
    long_text_tokens: int = 3000,
) -> DispatchSignals:
    """Derive budget/capability signals from the request; explicit options win over heuristics."""
    raw_text = " ".join(m.text_content() for m in request.messages)
    user_text = _user_text(request).lower()
    estimated_tokens = _estimate_tokens(raw_text)
    has_long_text = estimated_tokens > long_text_tokens

    options = request.options
    if options.complexity is not None:
        is_complex = options.complexity == "high"
    else:
        keywords: List[str] = list(complex_keywords)
        if policy is not None:
            keywords.extend(policy.applicability.keywords)
        is_complex = (
            (policy is not None and policy.is_complex_policy)
            or any(k.lower() in user_text for k in keywords)
            or has_long_text
        )

    if options.urgent is not None:
        is_urgent = options.urgent
    else:
        is_urgent = (
            (policy is not None and policy.applicability.urgency == "high")
            or any(k.lower() in user_text for k in urgent_keywords)
        )

    return DispatchSignals(
        has_images=bool(request.images),
        image_count=len(request.images),
        is_complex=is_complex,
        is_urgent=is_urgent,
        estimated_tokens=estimated_tokens,
        has_long_text=has_long_text,
    )
