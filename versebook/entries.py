import json
from datetime import datetime, timezone
from typing import List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from versebook.auth import Session
from versebook.documents import IndexRequiredError, VersionConflictError, utc_now
from versebook.events import log_store_event

ENTRIES = "entries"
UPDATE_ATTEMPTS = 3

LIST_DEFAULTS = ("bible_verses", "related_verses")
EMPTY_PATHWAY = json.dumps({"pathwayPoints": []})


class EntryTypeChangeError(ValueError):
    pass


def _created_ts(entry: dict) -> float:
    value = entry.get("created_at")
    if not value:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) / 1000.0
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def sort_newest_first(entries: List[dict]) -> List[dict]:
    return sorted(entries, key=_created_ts, reverse=True)


def merge_audio_segments(current: Optional[dict], incoming: Optional[dict]) -> dict:
    merged = dict(current or {})
    merged.update(incoming or {})
    return merged


class EntryStore:
    def __init__(self, documents):
        self.documents = documents

    def create(self, session: Session, entry: dict) -> dict:
        data = {k: v for k, v in entry.items() if v is not None}
        data["user_id"] = session.user_id
        for field in LIST_DEFAULTS:
            data.setdefault(field, [])
        if data.get("type") == "pathway" and not data.get("content"):
            data["content"] = EMPTY_PATHWAY
        created = self.documents.insert(ENTRIES, data)
        log_store_event(
            "entry_created",
            {
                "entry_id": created["id"],
                "type": created.get("type"),
                "has_content": bool(created.get("content")),
                "verse_count": len(created.get("bible_verses") or []),
            },
        )
        return created

    def get_by_id(self, entry_id: str) -> Optional[dict]:
        return self.documents.get(ENTRIES, entry_id)

    def list_by_user(self, user_id: str) -> List[dict]:
        try:
            return self.documents.query(
                ENTRIES, {"user_id": user_id}, order_by="created_at", descending=True
            )
        except IndexRequiredError as exc:
            log_store_event("entry_list_index_fallback", {"user_id": user_id, "error": str(exc)})
        entries = self.documents.query(ENTRIES, {"user_id": user_id})
        return sort_newest_first(entries)

    def _apply_update(self, entry_id: str, fields: dict, expected_version: Optional[int]) -> Optional[dict]:
        current = self.get_by_id(entry_id)
        if current is None:
            return None
        if "type" in fields and fields["type"] != current.get("type"):
            raise EntryTypeChangeError(f"entry type is fixed as {current.get('type')!r}")
        changes = dict(fields)
        if "audio_segments" in changes:
            changes["audio_segments"] = merge_audio_segments(
                current.get("audio_segments"), changes["audio_segments"]
            )
        version = current["version"] if expected_version is None else expected_version
        return self.documents.update(ENTRIES, entry_id, changes, expected_version=version)

    def update(self, entry_id: str, fields: dict, expected_version: Optional[int] = None) -> Optional[dict]:
        """Shallow-merge ``fields`` over the stored entry.

        ``audio_segments`` is merged key by key with the stored map. With
        ``expected_version`` the write fails with VersionConflictError when
        the entry changed in between; without it the merge is re-read and
        retried so concurrent segment updates are not lost.
        """
        if expected_version is not None:
            updated = self._apply_update(entry_id, fields, expected_version)
        else:
            for attempt in Retrying(
                retry=retry_if_exception_type(VersionConflictError),
                stop=stop_after_attempt(UPDATE_ATTEMPTS),
                reraise=True,
            ):
                with attempt:
                    updated = self._apply_update(entry_id, fields, None)
        if updated is not None:
            log_store_event(
                "entry_updated",
                {"entry_id": entry_id, "fields": sorted(fields), "version": updated.get("version")},
            )
        return updated

    def delete(self, entry_id: str) -> bool:
        deleted = self.documents.delete(ENTRIES, entry_id)
        log_store_event("entry_deleted", {"entry_id": entry_id, "deleted": deleted})
        return deleted

    def add_bible_verse(self, entry: dict, verse: str) -> dict:
        verses = list(entry.get("bible_verses") or [])
        if verse in verses:
            return entry
        verses.append(verse)
        return self.update(entry["id"], {"bible_verses": verses}, expected_version=entry["version"])

    def remove_bible_verse(self, entry: dict, index: int) -> dict:
        verses = list(entry.get("bible_verses") or [])
        if index < 0 or index >= len(verses):
            raise IndexError(f"no bible verse at {index}")
        verses.pop(index)
        return self.update(entry["id"], {"bible_verses": verses}, expected_version=entry["version"])

    def append_ai_conversation(self, entry_id: str, question: str, answer: str, ok: bool = True) -> Optional[dict]:
        for attempt in Retrying(
            retry=retry_if_exception_type(VersionConflictError),
            stop=stop_after_attempt(UPDATE_ATTEMPTS),
            reraise=True,
        ):
            with attempt:
                current = self.get_by_id(entry_id)
                if current is None:
                    return None
                conversations = list(current.get("ai_conversations") or [])
                conversations.append(
                    {"question": question, "answer": answer, "timestamp": utc_now(), "ok": ok}
                )
                return self.update(
                    entry_id, {"ai_conversations": conversations}, expected_version=current["version"]
                )
