"""Image download, type sniffing, and original/derived blob archiving."""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

from PIL import Image, UnidentifiedImageError

from .errors import CrawlerError, PersistenceError
from .retry import RetryConfig, RetryHandler
from .storage import BlobStore
from .types import ArchiveResult, CanonicalItem

if TYPE_CHECKING:
    from .fetcher import FetchedBytes

LOGGER = logging.getLogger(__name__)

DEFAULT_WEBP_QUALITY = 80


class BytesFetcher(Protocol):
    def fetch_bytes(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int | None = None,
        source_id: str | None = None,
    ) -> "FetchedBytes": ...


class ImageFlagWriter(Protocol):
    def mark_images(self, item_id: str, *, has_original: bool, has_derived: bool) -> None: ...


def sniff_image_extension(data: bytes) -> str | None:
    """Return the storage extension for known image magic bytes, else None."""

    if data.startswith(b"\xff\xd8"):
        return "jpg"
    if data.startswith(b"\x89PNG"):
        return "png"
    if data.startswith(b"GIF8"):
        return "gif"
    if len(data) >= 12 and data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "webp"
    return None


def original_key(item: CanonicalItem, extension: str) -> str:
    return f"{item.type.plural}/{item.id}/original.{extension}"


def derived_key(item: CanonicalItem) -> str:
    return f"{item.type.plural}/{item.id}/derived.webp"


def transcode_to_webp(data: bytes, *, quality: int = DEFAULT_WEBP_QUALITY) -> bytes:
    with Image.open(io.BytesIO(data)) as image:
        image.load()
        if image.mode not in ("RGB", "RGBA"):
            has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
            image = image.convert("RGBA" if has_alpha else "RGB")
        output = io.BytesIO()
        image.save(output, format="WEBP", quality=quality)
    return output.getvalue()


class ImageArchiver:
    """Archive each item's main image as an original plus a WebP derivative.

    Download problems (timeouts after retries, oversize bodies, unrecognized
    bytes) are logged and reported as `ArchiveResult(False, False)`. Blob store
    write failures raise `PersistenceError`.
    """

    def __init__(
        self,
        fetcher: BytesFetcher,
        blobs: BlobStore,
        flags: ImageFlagWriter,
        retry: RetryHandler,
        retry_config: RetryConfig,
        *,
        max_bytes: int,
        timeout_seconds: float,
        webp_quality: int = DEFAULT_WEBP_QUALITY,
    ) -> None:
        self.fetcher = fetcher
        self.blobs = blobs
        self.flags = flags
        self.retry = retry
        self.retry_config = retry_config
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self.webp_quality = webp_quality

    def archive(self, item: CanonicalItem) -> ArchiveResult:
        url = item.image_url or ""
        if not url.lower().startswith(("http://", "https://")):
            LOGGER.debug("No archivable image for %s", item.id)
            return ArchiveResult()

        data = self._download(item, url)
        if data is None:
            return ArchiveResult()

        extension = sniff_image_extension(data)
        if extension is None:
            LOGGER.warning("Unrecognized image bytes for %s from %s", item.id, url)
            return ArchiveResult()

        key = original_key(item, extension)
        try:
            self.blobs.put(key, data, content_type=f"image/{'jpeg' if extension == 'jpg' else extension}")
            for stale in self.blobs.list(f"{item.type.plural}/{item.id}/original."):
                if stale != key:
                    self.blobs.delete(stale)
        except OSError as exc:
            raise PersistenceError(f"Failed to store original image for {item.id}: {exc}") from exc

        has_derived = self._store_derived(item, data)

        result = ArchiveResult(has_original=True, has_derived=has_derived)
        self.flags.mark_images(item.id, has_original=result.has_original, has_derived=result.has_derived)
        item.has_original = result.has_original
        item.has_derived = result.has_derived
        LOGGER.info("Archived image for %s (%s, derived=%s)", item.id, extension, has_derived)
        return result

    def _download(self, item: CanonicalItem, url: str) -> bytes | None:
        try:
            fetched = self.retry.execute(
                lambda: self.fetcher.fetch_bytes(
                    url,
                    timeout_seconds=self.timeout_seconds,
                    max_bytes=self.max_bytes,
                    source_id=item.source_id,
                ),
                self.retry_config,
                label=f"image {item.id}",
            )
        except CrawlerError as exc:
            LOGGER.warning("Image download failed for %s: %s", item.id, exc)
            return None

        if len(fetched.body) > self.max_bytes:
            LOGGER.warning(
                "Image for %s is %d bytes, above limit %d; skipping",
                item.id,
                len(fetched.body),
                self.max_bytes,
            )
            return None
        return fetched.body

    def _store_derived(self, item: CanonicalItem, data: bytes) -> bool:
        key = derived_key(item)
        try:
            webp = transcode_to_webp(data, quality=self.webp_quality)
        except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as exc:
            LOGGER.warning("WebP transcode failed for %s: %s", item.id, exc)
            try:
                self.blobs.delete(key)
            except OSError as delete_exc:
                raise PersistenceError(f"Failed to remove stale derivative for {item.id}: {delete_exc}") from delete_exc
            return False

        try:
            self.blobs.put(key, webp, content_type="image/webp")
        except OSError as exc:
            raise PersistenceError(f"Failed to store derived image for {item.id}: {exc}") from exc
        return True


__all__ = [
    "ImageArchiver",
    "derived_key",
    "original_key",
    "sniff_image_extension",
    "transcode_to_webp",
]
