"""
Image Pipeline

Resolves opaque image references once per request and, for each dispatch
attempt, shapes the message list for the candidate model:

  - no images               → messages unchanged
  - model without vision    → notice appended to the last user message
  - vision model            → images checked against the model's limits one
                              by one; the usable subset is attached to the
                              last user message as image_url parts

A single bad image never blocks the others.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from aidispatch.core.exceptions import ImageResolutionError
from aidispatch.core.logging import get_logger
from aidispatch.imaging.resolvers import ImageResolver, ResolvedImage
from aidispatch.models.catalog import ModelDescriptor
from aidispatch.models.request import ChatMessage, MessageContentPart

logger = get_logger(__name__)

NO_VISION_SUPPORT = "no-vision-support"
RESOLUTION_FAILED = "resolution-failed"

NO_VISION_NOTICE = (
    "\n\n[Note] The user supplied {count} image(s), but they cannot be used by this model. "
    "Base the analysis on the text description."
)
UNRESOLVED_NOTICE = (
    "\n\n[Note] The user supplied {count} image(s), but none of them could be loaded. "
    "Base the analysis on the text description."
)


@dataclass
class PreparedContent:
    messages: List[ChatMessage]
    used_vision: bool = False
    degrade_reason: Optional[str] = None
    image_count: int = 0
    rejected: List[str] = field(default_factory=list)


class ImageBatch:
    """
    The images of one request, shared by every attempt. Each ref is resolved
    at most once. Refs are resolved in order, a window at a time, only as far
    as needed; no new window starts once the per-image timeout has elapsed
    since the first, so resolution stays under twice that timeout.
    """

    def __init__(self, refs: Sequence[str], resolver: ImageResolver, timeout: float):
        self.refs = list(refs)
        self._resolver = resolver
        self._timeout = timeout
        self._resolved: Dict[str, ResolvedImage] = {}
        self._failures: Dict[str, str] = {}
        self._started: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def resolved(self) -> Dict[str, ResolvedImage]:
        return dict(self._resolved)

    @property
    def failures(self) -> Dict[str, str]:
        return dict(self._failures)

    @property
    def pending(self) -> List[str]:
        return [
            ref for ref in dict.fromkeys(self.refs)
            if ref not in self._resolved and ref not in self._failures
        ]

    @property
    def usable(self) -> bool:
        return bool(self._resolved)

    @property
    def attempted(self) -> bool:
        return self._started is not None

    @property
    def expired(self) -> bool:
        return self._started is not None and time.monotonic() - self._started >= self._timeout

    async def resolve(self, limit: Optional[int] = None) -> None:
        """Resolve pending refs until `limit` images are in hand (every ref when None)."""
        async with self._lock:
            target = len(self.refs) if limit is None else limit
            if self._started is None:
                self._started = time.monotonic()
            while len(self._resolved) < target:
                pending = self.pending
                if not pending or self.expired:
                    break
                window = pending[: target - len(self._resolved)]
                results = await asyncio.gather(*(self._resolve_one(ref) for ref in window))
                for ref, (image, reason) in zip(window, results):
                    if image is not None:
                        self._resolved[ref] = image
                    else:
                        self._failures[ref] = reason

        if self._failures:
            logger.warning(
                "image_resolution_partial" if self._resolved else "image_resolution_failed",
                resolved=len(self._resolved),
                failed=len(self._failures),
                pending=len(self.pending),
            )

    async def _resolve_one(self, ref: str):
        try:
            image = await asyncio.wait_for(self._resolver.resolve(ref), timeout=self._timeout)
            return image, ""
        except asyncio.TimeoutError:
            return None, f"timed out after {self._timeout:.1f}s"
        except ImageResolutionError as e:
            return None, e.message
        except Exception as e:
            # A broken resolver costs this image, never the request.
            logger.warning("image_resolver_error", ref=ref[:96], error=f"{type(e).__name__}: {e}")
            return None, f"resolver error: {type(e).__name__}"


class ImagePipeline:
    def __init__(self, resolver: ImageResolver, resolve_timeout_seconds: float = 10.0):
        self.resolver = resolver
        self.resolve_timeout_seconds = resolve_timeout_seconds

    def image_timeout(self, policy_timeout: float) -> float:
        """Per-image bound, always shorter than the attempt timeout it serves."""
        return min(self.resolve_timeout_seconds, policy_timeout / 2)

    def batch(self, refs: Sequence[str], policy_timeout: float) -> ImageBatch:
        return ImageBatch(refs, self.resolver, self.image_timeout(policy_timeout))

    async def aclose(self) -> None:
        await self.resolver.aclose()

    async def prepare(
        self, messages: Sequence[ChatMessage], batch: ImageBatch, model: ModelDescriptor
    ) -> PreparedContent:
        messages = list(messages)
        if not batch.refs:
            return PreparedContent(messages=messages)

        count = len(batch.refs)
        if batch.attempted and not batch.usable:
            return PreparedContent(
                messages=_append_notice(messages, UNRESOLVED_NOTICE.format(count=count)),
                degrade_reason=RESOLUTION_FAILED,
                rejected=list(batch.refs),
            )
        if not model.supports_vision:
            logger.info("images_dropped_no_vision", model=model.model_id, image_count=count)
            return PreparedContent(
                messages=_append_notice(messages, NO_VISION_NOTICE.format(count=count)),
                degrade_reason=NO_VISION_SUPPORT,
            )

        cap = model.max_images or count
        usable, rejected = _screen(batch, model)
        while len(usable) < cap and batch.pending and not batch.expired:
            await batch.resolve(limit=len(batch.resolved) + cap - len(usable))
            usable, rejected = _screen(batch, model)

        for ref in rejected:
            logger.info("image_rejected", model=model.model_id, ref=ref[:96], reason=_rejection_reason(batch, model, ref))
        if len(usable) > cap or batch.pending:
            logger.info("images_truncated", model=model.model_id, supplied=count, kept=min(len(usable), cap))
        usable = usable[:cap]

        if not usable:
            return PreparedContent(
                messages=_append_notice(messages, UNRESOLVED_NOTICE.format(count=count)),
                degrade_reason=RESOLUTION_FAILED,
                rejected=rejected,
            )

        return PreparedContent(
            messages=_attach_images(messages, usable),
            used_vision=True,
            image_count=len(usable),
            rejected=rejected,
        )


def _screen(batch: ImageBatch, model: ModelDescriptor) -> Tuple[List[ResolvedImage], List[str]]:
    """Split the refs tried so far into images the model accepts and rejected refs, in request order."""
    resolved = batch.resolved
    failures = batch.failures
    usable: List[ResolvedImage] = []
    rejected: List[str] = []
    for ref in dict.fromkeys(batch.refs):
        image = resolved.get(ref)
        if image is None:
            if ref in failures:
                rejected.append(ref)
            continue
        if image.size_bytes is not None and image.size_bytes > model.max_image_bytes:
            rejected.append(ref)
        elif not model.accepts_format(image.format):
            rejected.append(ref)
        else:
            usable.append(image)
    return usable, rejected


def _rejection_reason(batch: ImageBatch, model: ModelDescriptor, ref: str) -> str:
    image = batch.resolved.get(ref)
    if image is None:
        return batch.failures.get(ref, "unresolved")
    if image.size_bytes is not None and image.size_bytes > model.max_image_bytes:
        return f"oversized ({image.size_bytes} > {model.max_image_bytes} bytes)"
    return f"unsupported format {image.format}"


def _last_user_index(messages: List[ChatMessage]) -> Optional[int]:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return None


def _append_notice(messages: List[ChatMessage], notice: str) -> List[ChatMessage]:
    idx = _last_user_index(messages)
    if idx is None:
        return messages + [ChatMessage(role="user", content=notice.strip())]
    target = messages[idx]
    updated = list(messages)
    updated[idx] = ChatMessage(role="user", content=target.text_content() + notice)
    return updated


def _attach_images(messages: List[ChatMessage], images: List[ResolvedImage]) -> List[ChatMessage]:
    idx = _last_user_index(messages)
    text = messages[idx].text_content() if idx is not None else ""
    parts = [MessageContentPart(type="text", text=text)] + [
        MessageContentPart(type="image_url", image_url={"url": image.url}) for image in images
    ]
    multimodal = ChatMessage(role="user", content=parts)
    if idx is None:
        return messages + [multimodal]
    updated = list(messages)
    updated[idx] = multimodal
    return updated
