import time
import uuid
from typing import Optional

from versebook import assistant
from versebook.blobs import audio_format, audio_path, poem_image_path, upload_with_url
from versebook.entries import EntryStore
from versebook.events import log_api_event


def save_entry_audio(
    store: EntryStore,
    blobs,
    entry: dict,
    data: bytes,
    content_type: Optional[str],
    source: str = "user_recording",
) -> dict:
    """Upload audio for ``entry`` and point the entry at it.

    The entry keeps its previous audio fields when the upload fails.
    """
    ext, normalized_type = audio_format(content_type)
    now_ms = int(time.time() * 1000)
    path = audio_path(entry["id"], ext, now_ms=now_ms)
    url = upload_with_url(
        blobs,
        data,
        path,
        {
            "content_type": normalized_type,
            "entry_id": entry["id"],
            "timestamp": str(now_ms),
            "source": source,
            "original_size": str(len(data)),
            "original_type": content_type or "",
        },
    )
    updated = store.update(
        entry["id"],
        {"audio_url": url, "audio_path": path, "recording_type": content_type or normalized_type},
    )
    return updated or {**entry, "audio_url": url}


def save_poem_image(store: EntryStore, blobs, entry: dict, data: bytes, content_type: Optional[str]) -> dict:
    path = poem_image_path(entry["user_id"], entry["id"])
    url = upload_with_url(blobs, data, path, {"content_type": content_type or "application/octet-stream"})
    updated = store.update(entry["id"], {"image_url": url})
    return updated or {**entry, "image_url": url}


def speak_to_url(blobs, text: str, folder: str = "audio/responses") -> str:
    audio = assistant.synthesize(text)
    path = f"{folder}/{int(time.time() * 1000)}_{uuid.uuid4().hex}.mp3"
    return upload_with_url(blobs, audio, path, {"content_type": "audio/mpeg", "source": "tts"})


def transcribe_entry_audio(
    store: EntryStore, entry_id: str, data: bytes, filename: str, content_type: Optional[str]
) -> str:
    """Background step: transcribe uploaded audio into the entry content."""
    text = assistant.transcribe(data, filename=filename, content_type=content_type or "audio/mpeg")
    updated = store.update(entry_id, {"content": text})
    if updated is None:
        raise LookupError(f"entry {entry_id} was deleted before transcription finished")
    log_api_event("entry_transcribed", {"entry_id": entry_id, "chars": len(text)})
    return text


def narrate_entry(store: EntryStore, blobs, entry_id: str, text: str) -> str:
    """Background step: synthesize speech for saved text and attach it."""
    entry = store.get_by_id(entry_id)
    if entry is None:
        raise LookupError(f"entry {entry_id} no longer exists")
    audio = assistant.synthesize(text)
    return save_entry_audio(store, blobs, entry, audio, "audio/mpeg", source="tts")["audio_url"]
