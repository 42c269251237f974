"""Pathway point operations.

A pathway entry keeps its ordered points inside ``content`` and the per-point
AI chat in ``chat_history``, keyed by the point's position. Every mutation
reads the entry, changes it in memory and writes it back guarded by the
entry version, retrying when another write got in first. Point insertion
and removal rewrite ``content`` and ``chat_history`` in the same write.
"""
from typing import Callable, Dict, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from versebook.auth import Session
from versebook.content import (
    Completion,
    PathwayContentError,
    PathwayPayload,
    PathwayPoint,
    dump_pathway,
    load_pathway,
)
from versebook.documents import VersionConflictError, utc_now
from versebook.entries import EntryStore

MUTATION_ATTEMPTS = 3


class EntryNotFoundError(LookupError):
    pass


class PointIndexError(IndexError):
    pass


class PointChangedError(RuntimeError):
    pass


def shift_chat_history(history: Optional[Dict[str, list]], index: int) -> Dict[str, list]:
    """Move history of points at ``index`` and after one position up."""
    shifted: Dict[str, list] = {}
    for key, messages in (history or {}).items():
        position = int(key)
        if position >= index:
            shifted[str(position + 1)] = messages
        else:
            shifted[str(position)] = messages
    return shifted


def unshift_chat_history(history: Optional[Dict[str, list]], index: int) -> Dict[str, list]:
    """Drop history of the point at ``index`` and move later ones down."""
    shifted: Dict[str, list] = {}
    for key, messages in (history or {}).items():
        position = int(key)
        if position == index:
            continue
        if position > index:
            shifted[str(position - 1)] = messages
        else:
            shifted[str(position)] = messages
    return shifted


def _load_owned_pathway(store: EntryStore, session: Session, entry_id: str) -> dict:
    entry = store.get_by_id(entry_id)
    if entry is None or entry.get("user_id") != session.user_id:
        raise EntryNotFoundError(entry_id)
    if entry.get("type") != "pathway":
        raise PathwayContentError("entry is not a pathway")
    return entry


def _point_at(payload: PathwayPayload, index: int) -> PathwayPoint:
    if index < 0 or index >= len(payload.points):
        raise PointIndexError(f"no pathway point at {index}")
    return payload.points[index]


def _mutate(
    store: EntryStore,
    session: Session,
    entry_id: str,
    change: Callable[[dict, PathwayPayload], Optional[dict]],
) -> dict:
    """Apply ``change`` to a fresh copy of the pathway and persist it.

    ``change`` edits the payload in place and may return extra fields to
    write alongside ``content``.
    """
    for attempt in Retrying(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(MUTATION_ATTEMPTS),
        reraise=True,
    ):
        with attempt:
            entry = _load_owned_pathway(store, session, entry_id)
            payload = load_pathway(entry.get("content") or "")
            extra = change(entry, payload) or {}
            fields = {"content": dump_pathway(payload), **extra}
            return store.update(entry_id, fields, expected_version=entry["version"])


def get_points(store: EntryStore, session: Session, entry_id: str) -> List[PathwayPoint]:
    entry = _load_owned_pathway(store, session, entry_id)
    return load_pathway(entry.get("content") or "").points


def complete_point(store: EntryStore, session: Session, entry_id: str, index: int) -> dict:
    def change(_entry, payload):
        point = _point_at(payload, index)
        completions = dict(point.completions or {})
        completions[session.user_id] = Completion(user_id=session.user_id, timestamp=utc_now())
        point.completions = completions

    return _mutate(store, session, entry_id, change)


def insert_point(
    store: EntryStore, session: Session, entry_id: str, index: int, point: PathwayPoint
) -> dict:
    def change(entry, payload):
        if index < 0 or index > len(payload.points):
            raise PointIndexError(f"cannot insert at {index}")
        payload.points.insert(index, point)
        return {"chat_history": shift_chat_history(entry.get("chat_history"), index)}

    return _mutate(store, session, entry_id, change)


def remove_point(store: EntryStore, session: Session, entry_id: str, index: int) -> dict:
    def change(entry, payload):
        _point_at(payload, index)
        payload.points.pop(index)
        return {"chat_history": unshift_chat_history(entry.get("chat_history"), index)}

    return _mutate(store, session, entry_id, change)


def set_primary_verse(
    store: EntryStore, session: Session, entry_id: str, index: int, verse: Optional[str]
) -> dict:
    def change(_entry, payload):
        _point_at(payload, index).primary_verse = (verse or "").strip() or None

    return _mutate(store, session, entry_id, change)


def add_additional_verse(store: EntryStore, session: Session, entry_id: str, index: int, verse: str) -> dict:
    def change(_entry, payload):
        point = _point_at(payload, index)
        point.additional_verses = list(point.additional_verses or []) + [verse.strip()]

    return _mutate(store, session, entry_id, change)


def edit_additional_verse(
    store: EntryStore, session: Session, entry_id: str, index: int, verse_index: int, verse: str
) -> dict:
    def change(_entry, payload):
        point = _point_at(payload, index)
        verses = list(point.additional_verses or [])
        if verse_index < 0 or verse_index >= len(verses):
            raise PointIndexError(f"no additional verse at {verse_index}")
        cleaned = verse.strip()
        if cleaned:
            verses[verse_index] = cleaned
        else:
            verses.pop(verse_index)
        point.additional_verses = verses or None

    return _mutate(store, session, entry_id, change)


def delete_additional_verse(
    store: EntryStore, session: Session, entry_id: str, index: int, verse_index: int
) -> dict:
    return edit_additional_verse(store, session, entry_id, index, verse_index, "")


def set_notes(store: EntryStore, session: Session, entry_id: str, index: int, notes: str) -> dict:
    def change(_entry, payload):
        _point_at(payload, index).notes = notes

    return _mutate(store, session, entry_id, change)


def get_point_chat(store: EntryStore, session: Session, entry_id: str, index: int) -> List[dict]:
    entry = _load_owned_pathway(store, session, entry_id)
    return list((entry.get("chat_history") or {}).get(str(index)) or [])


def append_point_chat(
    store: EntryStore,
    session: Session,
    entry_id: str,
    index: int,
    messages: List[dict],
    expected_title: Optional[str] = None,
) -> dict:
    """Append to the chat of point ``index``.

    With ``expected_title`` the write is refused when a different point now
    sits at ``index``, e.g. after an insert while the answer was generated.
    """

    def change(entry, payload):
        point = _point_at(payload, index)
        if expected_title is not None and point.title != expected_title:
            raise PointChangedError(f"pathway point {index} changed")
        history = dict(entry.get("chat_history") or {})
        history[str(index)] = list(history.get(str(index)) or []) + [
            {k: v for k, v in message.items() if v is not None} for message in messages
        ]
        return {"chat_history": history}

    return _mutate(store, session, entry_id, change)
