import hashlib
import json
import os
from datetime import datetime, timezone

EVENT_LOG_PATH = os.getenv("EVENT_LOG_PATH", "logs/events.log")
LOG_ID_SALT = os.getenv("LOG_ID_SALT", "")
AI_SLOW_MS = int(os.getenv("AI_SLOW_MS", "4000"))

HASHED_FIELDS = ("user_id", "entry_id", "link_id", "task_id")


def _hash_id(value: str) -> str:
    raw = f"{LOG_ID_SALT}{value}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def _log_event(event_type: str, payload: dict) -> None:
    try:
        dir_path = os.path.dirname(EVENT_LOG_PATH)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        safe_payload = dict(payload or {})
        for field in HASHED_FIELDS:
            if safe_payload.get(field):
                safe_payload[field] = _hash_id(str(safe_payload[field]))
        record = {
            "event_type": event_type,
            "ts": datetime.now(timezone.utc).isoformat(),
            **safe_payload,
        }
        with open(EVENT_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
    except OSError:
        pass


def reset_event_log(reason: str) -> None:
    try:
        dir_path = os.path.dirname(EVENT_LOG_PATH)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        with open(EVENT_LOG_PATH, "w", encoding="utf-8"):
            pass
    except OSError:
        return
    _log_event("event_log_reset", {"reason": reason})


def log_api_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)


def log_store_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)


def log_ai_event(event_type: str, payload: dict) -> None:
    elapsed_ms = (payload or {}).get("elapsed_ms")
    _log_event(event_type, payload)
    if elapsed_ms is not None and elapsed_ms > AI_SLOW_MS:
        _log_event("ai_slow", {"source": event_type, "elapsed_ms": elapsed_ms})


def log_task_event(event_type: str, payload: dict) -> None:
    _log_event(event_type, payload)
