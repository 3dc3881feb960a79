"""
Dispatch Audit Trail

Writes every dispatch outcome to an append-only JSONL file: one complete,
self-contained record per request, written whether the dispatch
succeeded or not. Historical lines are never rewritten.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from aidispatch.core.logging import get_logger
from aidispatch.models.request import DispatchRequest
from aidispatch.models.response import DispatchResponse

logger = get_logger(__name__)


class AuditLogger:
    """Append-only JSONL writer, serialised by an asyncio lock."""

    def __init__(self, log_path: str = "logs/dispatch_audit.jsonl"):
        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info("audit_logger_ready", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    async def log(self, record: dict) -> None:
        """Append a single record. A write failure is logged, never raised into the dispatch."""
        try:
            line = json.dumps(record, default=str, ensure_ascii=False) + "\n"
            async with self._lock:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            logger.error("audit_log_write_failed", error=str(e))

    def build_record(
        self, request: DispatchRequest, response: DispatchResponse, latency_ms: int
    ) -> dict:
        return {
            # Identity
            "request_id": response.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "requested_category": request.task_category,
            "task_category": response.task_category,

            # Decision
            "model_used": response.model_used,
            "budget_band": response.budget_band,
            "degraded": response.degraded,
            "from_cache": response.from_cache,
            "image_count": len(request.images),
            "used_vision": response.used_vision,
            "vision_fallback_reason": response.vision_fallback_reason,
            "attempts": [
                {"model_id": a.model_id, "outcome": a.outcome.value, "latency_ms": a.latency_ms}
                for a in response.attempts
            ],

            # Performance + cost
            "latency_ms": latency_ms,
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "cost": response.usage.cost,
            "parse_strategy": response.content.strategy if response.content else None,

            # Error
            "success": response.success,
            "error_code": response.error_code,
            "error": response.error,
        }
