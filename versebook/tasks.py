"""Status records for background work.

Work started after a request returns (transcription, speech synthesis) is
wrapped by :func:`run_task`, which records its progress so clients can poll
``GET /v1/tasks/{task_id}`` instead of failures only reaching the log.
Records live in Redis with a TTL, or in process memory when Redis is down.
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import redis

from versebook.config import REDIS_URL, TASK_TTL_SEC
from versebook.events import log_task_event

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

_REDIS_CLIENT = None
_REDIS_AVAILABLE = True
_MEM_STORE = {}


def _get_redis():
    global _REDIS_CLIENT, _REDIS_AVAILABLE
    if not _REDIS_AVAILABLE:
        return None
    if _REDIS_CLIENT is None:
        client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        try:
            client.ping()
        except redis.RedisError:
            _REDIS_AVAILABLE = False
            return None
        _REDIS_CLIENT = client
    return _REDIS_CLIENT


def _task_key(task_id: str) -> str:
    return f"task:{task_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mem_get(key: str) -> Optional[dict]:
    data = _MEM_STORE.get(key)
    if not data:
        return None
    expires_at = int(data.get("expires_at_ts") or 0)
    if expires_at and time.time() >= expires_at:
        _MEM_STORE.pop(key, None)
        return None
    return data


def _save(task_id: str, fields: dict) -> None:
    key = _task_key(task_id)
    data = {k: ("" if v is None else str(v)) for k, v in fields.items()}
    data["updated_at"] = _now_iso()
    client = _get_redis()
    if client is None:
        record = _mem_get(key) or {}
        record.update(data)
        record["expires_at_ts"] = int(time.time()) + TASK_TTL_SEC
        _MEM_STORE[key] = record
        return
    client.hset(key, mapping=data)
    client.expire(key, TASK_TTL_SEC)


def create_task(kind: str, user_id: str, entry_id: Optional[str] = None) -> str:
    task_id = uuid.uuid4().hex
    _save(
        task_id,
        {
            "task_id": task_id,
            "kind": kind,
            "user_id": user_id,
            "entry_id": entry_id,
            "status": PENDING,
            "error": "",
            "created_at": _now_iso(),
        },
    )
    log_task_event("task_created", {"task_id": task_id, "kind": kind, "entry_id": entry_id})
    return task_id


def get_task(task_id: str) -> Optional[dict]:
    key = _task_key(task_id)
    client = _get_redis()
    if client is None:
        data = _mem_get(key)
    else:
        data = client.hgetall(key) or None
    if not data:
        return None
    record = {k: v for k, v in data.items() if k != "expires_at_ts"}
    return {k: (v or None) for k, v in record.items()}


def run_task(task_id: str, fn: Callable, *args, **kwargs) -> None:
    """Run ``fn`` and record the outcome; errors are kept on the record."""
    _save(task_id, {"status": RUNNING})
    start = time.perf_counter()
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        _save(task_id, {"status": FAILED, "error": f"{type(exc).__name__}: {exc}"})
        log_task_event(
            "task_failed",
            {"task_id": task_id, "error": type(exc).__name__, "elapsed_ms": int((time.perf_counter() - start) * 1000)},
        )
        return
    _save(task_id, {"status": SUCCEEDED})
    log_task_event(
        "task_succeeded",
        {"task_id": task_id, "elapsed_ms": int((time.perf_counter() - start) * 1000)},
    )
