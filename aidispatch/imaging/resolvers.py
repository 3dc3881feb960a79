import asyncio
import base64
import binascii
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from aidispatch.core.exceptions import ImageResolutionError
from aidispatch.core.logging import get_logger

logger = get_logger(__name__)

# mime subtype -> format name as listed in a model's supported_image_formats
_FORMAT_NAMES = {
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "pjpeg": "JPEG",
    "png": "PNG",
    "bmp": "BMP",
    "x-ms-bmp": "BMP",
    "tiff": "TIFF",
    "webp": "WEBP",
    "gif": "GIF",
}


@dataclass
class ResolvedImage:
    ref: str
    url: str                         # data: URL or a short-lived https URL
    mime_type: str
    size_bytes: Optional[int] = None  # None when only a URL is known

    @property
    def format(self) -> str:
        subtype = self.mime_type.split("/", 1)[-1].lower()
        return _FORMAT_NAMES.get(subtype, subtype.upper())


def image_mime_type(name: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(name)
    return mime if mime and mime.startswith("image/") else None


def guess_mime_type(ref: str, default: str = "image/jpeg") -> str:
    return image_mime_type(urlparse(ref).path or ref) or default


def to_data_url(payload: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


class ImageResolver(ABC):
    """Turns an opaque image reference into something a backend can consume."""

    @abstractmethod
    async def resolve(self, ref: str) -> ResolvedImage:
        """Raises ImageResolutionError when the reference cannot be resolved."""

    async def aclose(self) -> None:
        pass


class DataUrlImageResolver(ImageResolver):
    async def resolve(self, ref: str) -> ResolvedImage:
        header, sep, payload = ref.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise ImageResolutionError("malformed data URL", ref=ref[:64])
        try:
            size = len(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ImageResolutionError(f"invalid base64 payload: {e}", ref=ref[:64]) from e
        mime_type = header[len("data:"):].split(";", 1)[0] or "image/jpeg"
        return ResolvedImage(ref=ref, url=ref, mime_type=mime_type, size_bytes=size)


class HttpImageResolver(ImageResolver):
    """Downloads the image and inlines it as a data URL (or passes the URL through)."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_bytes: int = 5 * 1024 * 1024,
        inline: bool = True,
    ):
        self.client = client or httpx.AsyncClient(timeout=10.0, follow_redirects=True)
        self.max_bytes = max_bytes
        self.inline = inline

    async def resolve(self, ref: str) -> ResolvedImage:
        try:
            async with self.client.stream("GET", ref) as response:
                response.raise_for_status()
                chunks = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ImageResolutionError(
                            f"image exceeds download limit of {self.max_bytes} bytes", ref=ref
                        )
                    chunks.append(chunk)
                content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        except httpx.HTTPStatusError as e:
            raise ImageResolutionError(
                f"image download failed with status {e.response.status_code}", ref=ref
            ) from e
        except httpx.HTTPError as e:
            raise ImageResolutionError(f"image download failed: {e}", ref=ref) from e

        payload = b"".join(chunks)
        mime_type = content_type if content_type.startswith("image/") else guess_mime_type(ref)
        url = to_data_url(payload, mime_type) if self.inline else ref
        return ResolvedImage(ref=ref, url=url, mime_type=mime_type, size_bytes=len(payload))

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalFileImageResolver(ImageResolver):
    """Reads images under `root`; paths that leave it and non-image files are refused."""

    def __init__(self, root: str = "."):
        self.root = Path(root)

    async def resolve(self, ref: str) -> ResolvedImage:
        relative = ref[len("file://"):] if ref.startswith("file://") else ref
        try:
            root = self.root.resolve()
            path = (root / relative).resolve()
            if not path.is_relative_to(root):
                raise ImageResolutionError("image path is outside the image root", ref=ref[:96])
            mime_type = image_mime_type(path.name)
            if mime_type is None:
                raise ImageResolutionError("not an image file", ref=ref[:96])
            if not path.is_file():
                raise ImageResolutionError("image file not found", ref=ref[:96])
            payload = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ImageResolutionError(f"image file unreadable: {e.strerror or e}", ref=ref[:96]) from e
        return ResolvedImage(ref=ref, url=to_data_url(payload, mime_type), mime_type=mime_type, size_bytes=len(payload))


class CompositeImageResolver(ImageResolver):
    """Dispatches on the reference scheme; unknown schemes go to the default resolver, if any."""

    def __init__(self, by_scheme: Dict[str, ImageResolver], default: Optional[ImageResolver] = None):
        self._by_scheme = by_scheme
        self._default = default

    async def resolve(self, ref: str) -> ResolvedImage:
        scheme = ref.split(":", 1)[0].lower() if ":" in ref else ""
        resolver = self._by_scheme.get(scheme, self._default)
        if resolver is None:
            raise ImageResolutionError(f"no resolver for scheme '{scheme or 'none'}'", ref=ref[:96])
        return await resolver.resolve(ref)

    async def aclose(self) -> None:
        children = list(self._by_scheme.values()) + ([self._default] if self._default else [])
        closed = set()
        for resolver in children:
            if id(resolver) in closed:
                continue
            closed.add(id(resolver))
            await resolver.aclose()


def default_resolver(max_bytes: int, local_root: str = "") -> CompositeImageResolver:
    """data: and http(s): refs always; file: refs only when a local image root is configured."""
    http = HttpImageResolver(max_bytes=max_bytes)
    by_scheme: Dict[str, ImageResolver] = {"data": DataUrlImageResolver(), "http": http, "https": http}
    if local_root:
        by_scheme["file"] = LocalFileImageResolver(local_root)
    return CompositeImageResolver(by_scheme)
