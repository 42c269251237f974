import json
import os
import time
import uuid
from typing import Optional

from tenacity import retry, stop_after_attempt, wait_fixed

from versebook.config import BLOB_BASE_URL, BLOB_DIR
from versebook.events import log_api_event

AUDIO_TYPES = {
    "audio/webm": ("webm", "audio/webm"),
    "audio/wav": ("wav", "audio/wav"),
    "audio/mp4": ("m4a", "audio/mp4"),
    "audio/m4a": ("m4a", "audio/mp4"),
}
DEFAULT_AUDIO = ("mp3", "audio/mpeg")


class BlobError(RuntimeError):
    pass


def audio_format(content_type: Optional[str]) -> tuple[str, str]:
    """File extension and normalized content type for an audio upload."""
    content_type = (content_type or "").lower()
    if content_type in AUDIO_TYPES:
        return AUDIO_TYPES[content_type]
    if "audio/webm" in content_type:
        return AUDIO_TYPES["audio/webm"]
    return DEFAULT_AUDIO


def audio_path(entry_id: str, ext: str, now_ms: Optional[int] = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"audio/{entry_id}/{now_ms}_{uuid.uuid4().hex}.{ext}"


def poem_image_path(user_id: str, poem_id: str) -> str:
    return f"poems/{user_id}/{poem_id}"


class LocalBlobStore:
    """Blob store on the local filesystem, served under BLOB_BASE_URL."""

    def __init__(self, root: str = BLOB_DIR, base_url: str = BLOB_BASE_URL):
        self.root = root
        self.base_url = base_url.rstrip("/")

    def _full_path(self, path: str) -> str:
        full = os.path.normpath(os.path.join(self.root, path))
        if not full.startswith(os.path.normpath(self.root) + os.sep):
            raise BlobError(f"invalid blob path: {path}")
        return full

    def upload(self, data: bytes, path: str, metadata: Optional[dict] = None) -> str:
        if not data:
            raise BlobError("empty upload")
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        with open(full + ".meta.json", "w", encoding="utf-8") as f:
            json.dump(metadata or {}, f, ensure_ascii=True)
        return path

    def get_download_url(self, ref: str) -> str:
        if not os.path.exists(self._full_path(ref)):
            raise BlobError(f"blob not found: {ref}")
        return f"{self.base_url}/{ref}"


@retry(stop=stop_after_attempt(3), wait=wait_fixed(1), reraise=True)
def _download_url(blobs, ref: str) -> str:
    return blobs.get_download_url(ref)


def upload_with_url(blobs, data: bytes, path: str, metadata: Optional[dict] = None) -> str:
    """Upload then fetch the download URL, retrying the URL fetch."""
    ref = blobs.upload(data, path, metadata)
    try:
        url = _download_url(blobs, ref)
    except BlobError as exc:
        log_api_event("blob_url_failed", {"path": path, "error": str(exc)})
        raise
    log_api_event("blob_uploaded", {"path": path, "size": len(data)})
    return url
