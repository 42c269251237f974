import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from versebook import assistant, media, pathways, verses
from versebook.auth import (
    Session,
    create_user,
    get_user_by_email,
    get_user_by_id,
    normalize_email,
    password_problem,
    update_last_login,
    validate_email,
    verify_password,
)
from versebook.blobs import BlobError, LocalBlobStore
from versebook.config import API_TITLE, API_VERSION, DB, DOCUMENT_BACKEND
from versebook.content import PathwayContentError, PathwayPoint, content_as_text, parse_content
from versebook.documents import MemoryDocuments, PostgresDocuments, VersionConflictError, utc_now
from versebook.entries import EntryStore, EntryTypeChangeError
from versebook.events import log_api_event, reset_event_log
from versebook.jwt_utils import create_access_token, verify_access_token
from versebook.links import LinkStore, resolve_linked_entries
from versebook.models import (
    AskRequest,
    AskResponse,
    AuthLoginRequest,
    AuthMeResponse,
    AuthRegisterRequest,
    ChatSendRequest,
    ChatSendResponse,
    EntryCreateRequest,
    EntryDeleteResponse,
    EntryItem,
    EntryListResponse,
    EntryUpdateRequest,
    LinkCreateRequest,
    LinkCreateResponse,
    LinkDeleteResponse,
    LinkedEntriesResponse,
    MediaUploadResponse,
    NotesRequest,
    PassageResponse,
    PointChatRequest,
    PointChatResponse,
    PointCreateRequest,
    TaskResponse,
    TokenResponse,
    VerseAddRequest,
    VerseSearchResponse,
    VerseTextRequest,
)
from versebook.ref_parser import extract_verse_reference
from versebook.tasks import create_task, get_task, run_task

app = FastAPI(title=API_TITLE, version=API_VERSION)

CORS_ALLOW_ALL = os.getenv("CORS_ALLOW_ALL", "1") == "1"
if CORS_ALLOW_ALL:
    allow_origins = ["*"]
else:
    raw_origins = os.getenv(
        "CORS_ALLOW_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    )
    allow_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

EVENT_LOG_RESET_ON_STARTUP = os.getenv("EVENT_LOG_RESET_ON_STARTUP", "0") == "1"
ALLOW_LOG_RESET = os.getenv("ALLOW_LOG_RESET", "1") == "1"
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(25 * 1024 * 1024)))
CHAT_TITLE_CHARS = 30

_MEMORY_DOCUMENTS = MemoryDocuments()


@app.on_event("startup")
def _reset_event_log_on_startup() -> None:
    if EVENT_LOG_RESET_ON_STARTUP:
        reset_event_log("startup")


@app.exception_handler(HTTPException)
def handle_http_exception(_request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "http_error", "message": str(exc.detail)}},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
def handle_validation_exception(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "validation_error",
                "message": "invalid request",
                "details": exc.errors(),
            }
        },
    )


@app.post("/v1/logs/reset")
def reset_logs():
    if not ALLOW_LOG_RESET:
        raise HTTPException(status_code=403, detail="log reset disabled")
    reset_event_log("client")
    log_api_event("api_log_reset", {"client": "app"})
    return {"reset": True}


@app.get("/healthz")
def healthz():
    return {"ok": True, "backend": DOCUMENT_BACKEND}


@contextmanager
def open_documents():
    if DOCUMENT_BACKEND == "memory":
        yield _MEMORY_DOCUMENTS
        return
    conn = psycopg2.connect(**DB)
    try:
        yield PostgresDocuments(conn)
    finally:
        conn.close()


def get_documents():
    with open_documents() as documents:
        yield documents


def get_entry_store(documents=Depends(get_documents)) -> EntryStore:
    return EntryStore(documents)


def get_link_store(documents=Depends(get_documents)) -> LinkStore:
    return LinkStore(documents)


def get_blobs() -> LocalBlobStore:
    return LocalBlobStore()


async def read_body(request: Request) -> bytes:
    return await request.body()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def require_session(request: Request, documents=Depends(get_documents)) -> Session:
    token = _get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="auth required")
    payload = verify_access_token(token)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="invalid token")
    user = get_user_by_id(documents, payload["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="user not found")
    return Session(user_id=user["id"], email=user.get("email"))


def _entry_item(entry: dict) -> dict:
    item = dict(entry)
    item["payload"] = parse_content(entry.get("type", ""), entry.get("content")).model_dump(by_alias=True)
    return item


def _owned_entry(store: EntryStore, session: Session, entry_id: str) -> dict:
    entry = store.get_by_id(entry_id)
    if entry is None or entry.get("user_id") != session.user_id:
        raise HTTPException(status_code=404, detail="entry not found")
    return entry


def _run_entry_task(task_id: str, fn, *args) -> None:
    with open_documents() as documents:
        run_task(task_id, fn, EntryStore(documents), *args)


def _token_response(user_id: str, email: str | None) -> dict:
    access_token, access_exp = create_access_token(user_id, email)
    return {
        "user_id": user_id,
        "access_token": access_token,
        "expires_in": access_exp - int(datetime.now(timezone.utc).timestamp()),
        "token_type": "Bearer",
        "email": email,
    }


@app.post("/v1/auth/register", response_model=TokenResponse)
def register(payload: AuthRegisterRequest, documents=Depends(get_documents)):
    email = normalize_email(payload.email)
    if not validate_email(email):
        log_api_event("auth_register_failed", {"reason": "invalid_email"})
        raise HTTPException(status_code=400, detail="invalid email")
    problem = password_problem(payload.password)
    if problem:
        log_api_event("auth_register_failed", {"reason": problem.replace(" ", "_")})
        raise HTTPException(status_code=400, detail=problem)
    if get_user_by_email(documents, email):
        log_api_event("auth_register_failed", {"reason": "email_exists"})
        raise HTTPException(status_code=409, detail="email already registered")
    user = create_user(documents, email, payload.password)
    update_last_login(documents, user["id"], utc_now())
    log_api_event("auth_register_success", {"user_id": user["id"]})
    return _token_response(user["id"], email)


@app.post("/v1/auth/login", response_model=TokenResponse)
def login(payload: AuthLoginRequest, documents=Depends(get_documents)):
    user = get_user_by_email(documents, payload.email)
    if not user or not verify_password(payload.password or "", user["password_hash"]):
        log_api_event("auth_login_failed", {"reason": "invalid_credentials"})
        raise HTTPException(status_code=401, detail="invalid credentials")
    update_last_login(documents, user["id"], utc_now())
    log_api_event("auth_login_success", {"user_id": user["id"]})
    return _token_response(user["id"], user.get("email"))


@app.get("/v1/auth/me", response_model=AuthMeResponse)
def me(session: Session = Depends(require_session), documents=Depends(get_documents)):
    user = get_user_by_id(documents, session.user_id)
    return {
        "user_id": user["id"],
        "email": user["email"],
        "created_at": user.get("created_at"),
        "last_login": user.get("last_login"),
    }


@app.post("/v1/entries", response_model=EntryItem)
def create_entry(
    payload: EntryCreateRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = store.create(session, payload.model_dump(exclude_none=True))
    log_api_event("entry_create", {"user_id": session.user_id, "type": entry.get("type")})
    return _entry_item(entry)


@app.get("/v1/entries", response_model=EntryListResponse)
def list_entries(
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    start = time.perf_counter()
    entries = store.list_by_user(session.user_id)
    log_api_event(
        "entry_list",
        {
            "user_id": session.user_id,
            "count": len(entries),
            "elapsed_ms": int((time.perf_counter() - start) * 1000),
        },
    )
    return {"items": [_entry_item(e) for e in entries]}


@app.get("/v1/entries/{entry_id}", response_model=EntryItem)
def get_entry(
    entry_id: str,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(_owned_entry(store, session, entry_id))


@app.patch("/v1/entries/{entry_id}", response_model=EntryItem)
def update_entry(
    entry_id: str,
    payload: EntryUpdateRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    _owned_entry(store, session, entry_id)
    # explicit nulls clear optional fields; title and type cannot be cleared
    fields = payload.model_dump(exclude_unset=True, exclude={"expected_version"})
    for required in ("title", "type"):
        if required in fields and fields[required] is None:
            del fields[required]
    for listed in ("bible_verses", "related_verses"):
        if listed in fields and fields[listed] is None:
            fields[listed] = []
    try:
        updated = store.update(entry_id, fields, expected_version=payload.expected_version)
    except EntryTypeChangeError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="entry changed, reload and retry")
    if updated is None:
        raise HTTPException(status_code=404, detail="entry not found")
    return _entry_item(updated)


@app.delete("/v1/entries/{entry_id}", response_model=EntryDeleteResponse)
def delete_entry(
    entry_id: str,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    _owned_entry(store, session, entry_id)
    deleted = store.delete(entry_id)
    log_api_event("entry_delete", {"user_id": session.user_id, "deleted": deleted})
    return {"deleted": deleted}


@app.post("/v1/entries/{entry_id}/verses", response_model=EntryItem)
def add_entry_verse(
    entry_id: str,
    payload: VerseAddRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = _owned_entry(store, session, entry_id)
    verse = payload.verse.strip()
    text = verses.resolve(verse)
    if text in (verses.VERSE_ERROR_TEXT, verses.VERSE_MISSING_TEXT):
        raise HTTPException(status_code=422, detail="verse not found")
    try:
        updated = store.add_bible_verse(entry, verse)
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="entry changed, reload and retry")
    return _entry_item(updated)


@app.delete("/v1/entries/{entry_id}/verses/{index}", response_model=EntryItem)
def remove_entry_verse(
    entry_id: str,
    index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = _owned_entry(store, session, entry_id)
    try:
        updated = store.remove_bible_verse(entry, index)
    except IndexError:
        raise HTTPException(status_code=404, detail="verse not found")
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="entry changed, reload and retry")
    return _entry_item(updated)


@app.post("/v1/entries/{entry_id}/ask", response_model=AskResponse)
def ask_entry(
    entry_id: str,
    payload: AskRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = _owned_entry(store, session, entry_id)
    reply = assistant.ask_about_entry(entry, payload.question)
    updated = store.append_ai_conversation(entry_id, payload.question, reply.answer, ok=reply.ok)
    log_api_event("entry_ask", {"user_id": session.user_id, "ok": reply.ok})
    return {
        "answer": reply.answer,
        "ok": reply.ok,
        "ai_conversations": (updated or entry).get("ai_conversations") or [],
    }


@app.post("/v1/chat", response_model=ChatSendResponse)
def send_chat_message(
    payload: ChatSendRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = None
    if payload.entry_id:
        entry = _owned_entry(store, session, payload.entry_id)
        if entry.get("type") != "chat":
            raise HTTPException(status_code=400, detail="entry is not a chat")
    history = list((entry or {}).get("messages") or [])

    try:
        turn = assistant.chat_turn((entry or {}).get("title"), history, payload.message)
    except assistant.ExternalServiceError:
        log_api_event("chat_failed", {"user_id": session.user_id})
        raise HTTPException(status_code=502, detail="assistant unavailable, please try again")

    bible_verses = verses.find_related_verses(turn["content"])
    user_turn = {"role": "user", "content": payload.message, "timestamp": utc_now()}
    assistant_turn = {
        "role": "assistant",
        "content": turn["content"],
        "category": turn["category"] or None,
        "related_verses": turn["related_verses"] or None,
        "bible_verses": bible_verses,
        "timestamp": utc_now(),
    }
    assistant_turn = {k: v for k, v in assistant_turn.items() if v is not None}
    messages = history + [user_turn, assistant_turn]

    if entry is None:
        title = payload.message
        if len(title) > CHAT_TITLE_CHARS:
            title = f"{title[:CHAT_TITLE_CHARS]}..."
        entry = store.create(
            session,
            {
                "title": title,
                "type": "chat",
                "messages": messages,
                "bible_verses": bible_verses,
                "category": turn["category"] or None,
                "related_verses": turn["related_verses"],
            },
        )
    else:
        fields = {"messages": messages}
        if turn["category"]:
            fields["category"] = turn["category"]
        if turn["related_verses"]:
            fields["related_verses"] = turn["related_verses"]
        if bible_verses:
            merged = list(entry.get("bible_verses") or [])
            merged += [v for v in bible_verses if v not in merged]
            fields["bible_verses"] = merged
        try:
            entry = store.update(entry["id"], fields, expected_version=entry["version"])
        except VersionConflictError:
            raise HTTPException(status_code=409, detail="conversation changed, reload and retry")

    task_id = None
    if payload.narrate:
        narration = f"You: {payload.message}\n\nAssistant: {turn['content']}"
        task_id = create_task("narrate", session.user_id, entry["id"])
        background_tasks.add_task(
            _run_entry_task, task_id, media.narrate_entry, get_blobs(), entry["id"], narration
        )
    log_api_event("chat_turn", {"user_id": session.user_id, "turns": len(messages)})
    return {"entry": _entry_item(entry), "reply": assistant_turn, "task_id": task_id}


@app.get("/v1/entries/{entry_id}/links", response_model=LinkedEntriesResponse)
def list_links(
    entry_id: str,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
    links: LinkStore = Depends(get_link_store),
):
    _owned_entry(store, session, entry_id)
    found = links.get_all_for_entry(entry_id)
    all_links = found["source_links"] + found["target_links"]
    linked = [
        e for e in resolve_linked_entries(links, store, entry_id) if e.get("user_id") == session.user_id
    ]
    return {"links": all_links, "entries": [_entry_item(e) for e in linked]}


@app.post("/v1/entries/{entry_id}/links", response_model=LinkCreateResponse)
def create_link(
    entry_id: str,
    payload: LinkCreateRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
    links: LinkStore = Depends(get_link_store),
):
    _owned_entry(store, session, entry_id)
    _owned_entry(store, session, payload.target_entry_id)
    try:
        link = links.create(entry_id, payload.target_entry_id, session.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"created": link is not None, "link": link}


@app.delete("/v1/links/{link_id}", response_model=LinkDeleteResponse)
def delete_link(
    link_id: str,
    session: Session = Depends(require_session),
    links: LinkStore = Depends(get_link_store),
):
    link = links.get(link_id)
    if link is None or link.get("user_id") != session.user_id:
        raise HTTPException(status_code=404, detail="link not found")
    return {"deleted": links.delete(link_id)}


def _pathway_call(fn, *args):
    try:
        return fn(*args)
    except pathways.EntryNotFoundError:
        raise HTTPException(status_code=404, detail="entry not found")
    except pathways.PointIndexError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except pathways.PointChangedError as exc:
        raise HTTPException(status_code=409, detail=f"{exc}, reload and ask again")
    except PathwayContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except VersionConflictError:
        raise HTTPException(status_code=409, detail="pathway changed, reload and retry")


@app.post("/v1/entries/{entry_id}/points", response_model=EntryItem)
def insert_point(
    entry_id: str,
    payload: PointCreateRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    point = PathwayPoint(
        title=payload.title,
        description=payload.description,
        primary_verse=(payload.primary_verse or "").strip() or None,
        additional_verses=[v.strip() for v in payload.additional_verses or [] if v.strip()] or None,
    )
    updated = _pathway_call(pathways.insert_point, store, session, entry_id, payload.index, point)
    log_api_event("pathway_point_insert", {"entry_id": entry_id, "index": payload.index})
    return _entry_item(updated)


@app.delete("/v1/entries/{entry_id}/points/{index}", response_model=EntryItem)
def remove_point(
    entry_id: str,
    index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    updated = _pathway_call(pathways.remove_point, store, session, entry_id, index)
    log_api_event("pathway_point_remove", {"entry_id": entry_id, "index": index})
    return _entry_item(updated)


@app.post("/v1/entries/{entry_id}/points/{index}/complete", response_model=EntryItem)
def complete_point(
    entry_id: str,
    index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    updated = _pathway_call(pathways.complete_point, store, session, entry_id, index)
    log_api_event("pathway_point_complete", {"entry_id": entry_id, "user_id": session.user_id})
    return _entry_item(updated)


@app.put("/v1/entries/{entry_id}/points/{index}/primary-verse", response_model=EntryItem)
def set_primary_verse(
    entry_id: str,
    index: int,
    payload: VerseTextRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(
        _pathway_call(pathways.set_primary_verse, store, session, entry_id, index, payload.verse)
    )


@app.delete("/v1/entries/{entry_id}/points/{index}/primary-verse", response_model=EntryItem)
def clear_primary_verse(
    entry_id: str,
    index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(_pathway_call(pathways.set_primary_verse, store, session, entry_id, index, None))


@app.post("/v1/entries/{entry_id}/points/{index}/verses", response_model=EntryItem)
def add_point_verse(
    entry_id: str,
    index: int,
    payload: VerseTextRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    if not payload.verse.strip():
        raise HTTPException(status_code=400, detail="verse required")
    return _entry_item(
        _pathway_call(pathways.add_additional_verse, store, session, entry_id, index, payload.verse)
    )


@app.put("/v1/entries/{entry_id}/points/{index}/verses/{verse_index}", response_model=EntryItem)
def edit_point_verse(
    entry_id: str,
    index: int,
    verse_index: int,
    payload: VerseTextRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(
        _pathway_call(
            pathways.edit_additional_verse, store, session, entry_id, index, verse_index, payload.verse
        )
    )


@app.delete("/v1/entries/{entry_id}/points/{index}/verses/{verse_index}", response_model=EntryItem)
def delete_point_verse(
    entry_id: str,
    index: int,
    verse_index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(
        _pathway_call(pathways.delete_additional_verse, store, session, entry_id, index, verse_index)
    )


@app.put("/v1/entries/{entry_id}/points/{index}/notes", response_model=EntryItem)
def set_point_notes(
    entry_id: str,
    index: int,
    payload: NotesRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    return _entry_item(_pathway_call(pathways.set_notes, store, session, entry_id, index, payload.notes))


@app.get("/v1/entries/{entry_id}/points/{index}/chat", response_model=PointChatResponse)
def get_point_chat(
    entry_id: str,
    index: int,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    messages = _pathway_call(pathways.get_point_chat, store, session, entry_id, index)
    return {"messages": messages, "ok": True}


@app.post("/v1/entries/{entry_id}/points/{index}/chat", response_model=PointChatResponse)
def ask_point(
    entry_id: str,
    index: int,
    payload: PointChatRequest,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
    blobs: LocalBlobStore = Depends(get_blobs),
):
    points = _pathway_call(pathways.get_points, store, session, entry_id)
    if index < 0 or index >= len(points):
        raise HTTPException(status_code=404, detail=f"no pathway point at {index}")
    history = _pathway_call(pathways.get_point_chat, store, session, entry_id, index)

    user_message = {"role": "user", "content": payload.question}
    speak = None
    if payload.speak:
        speak = lambda text: media.speak_to_url(blobs, text)  # noqa: E731
    reply = assistant.ask(
        assistant.build_point_context(points[index], payload.question),
        history + [user_message],
        speak=speak,
    )
    assistant_message = {
        "role": "assistant",
        "content": reply.answer,
        "audio_url": reply.audio_url,
        "failed": None if reply.ok else True,
    }
    updated = _pathway_call(
        pathways.append_point_chat,
        store,
        session,
        entry_id,
        index,
        [user_message, assistant_message],
        points[index].title,
    )
    log_api_event("pathway_point_ask", {"entry_id": entry_id, "index": index, "ok": reply.ok})
    return {"messages": (updated.get("chat_history") or {}).get(str(index), []), "ok": reply.ok}


@app.post("/v1/entries/{entry_id}/audio", response_model=MediaUploadResponse)
def upload_audio(
    entry_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    body: bytes = Depends(read_body),
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
    blobs: LocalBlobStore = Depends(get_blobs),
):
    entry = _owned_entry(store, session, entry_id)
    if not body:
        raise HTTPException(status_code=400, detail="empty audio")
    if len(body) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="audio too large")
    content_type = request.headers.get("Content-Type")
    try:
        updated = media.save_entry_audio(store, blobs, entry, body, content_type)
    except BlobError:
        log_api_event("audio_upload_failed", {"entry_id": entry_id})
        raise HTTPException(status_code=502, detail="audio upload failed")

    task_id = None
    if entry.get("type") == "audio":
        task_id = create_task("transcribe", session.user_id, entry_id)
        filename = (updated.get("audio_path") or "recording.mp3").rsplit("/", 1)[-1]
        background_tasks.add_task(
            _run_entry_task, task_id, media.transcribe_entry_audio, entry_id, body, filename, content_type
        )
    return {"entry": _entry_item(updated), "task_id": task_id}


@app.post("/v1/entries/{entry_id}/narrate", response_model=MediaUploadResponse)
def request_narration(
    entry_id: str,
    background_tasks: BackgroundTasks,
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
):
    entry = _owned_entry(store, session, entry_id)
    text = content_as_text(entry.get("type", ""), entry.get("content")).strip()
    if not text:
        raise HTTPException(status_code=400, detail="nothing to narrate")
    task_id = create_task("narrate", session.user_id, entry_id)
    background_tasks.add_task(_run_entry_task, task_id, media.narrate_entry, get_blobs(), entry_id, text)
    return {"entry": _entry_item(entry), "task_id": task_id}


@app.post("/v1/entries/{entry_id}/image", response_model=MediaUploadResponse)
def upload_image(
    entry_id: str,
    request: Request,
    body: bytes = Depends(read_body),
    session: Session = Depends(require_session),
    store: EntryStore = Depends(get_entry_store),
    blobs: LocalBlobStore = Depends(get_blobs),
):
    entry = _owned_entry(store, session, entry_id)
    if entry.get("type") not in ("poem", "image"):
        raise HTTPException(status_code=400, detail="images are only kept for poem and image entries")
    if not body:
        raise HTTPException(status_code=400, detail="empty image")
    if len(body) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="image too large")
    try:
        updated = media.save_poem_image(store, blobs, entry, body, request.headers.get("Content-Type"))
    except BlobError:
        log_api_event("image_upload_failed", {"entry_id": entry_id})
        raise HTTPException(status_code=502, detail="image upload failed")
    return {"entry": _entry_item(updated), "task_id": None}


@app.get("/v1/tasks/{task_id}", response_model=TaskResponse)
def get_task_status(task_id: str, session: Session = Depends(require_session)):
    record = get_task(task_id)
    if not record or record.get("user_id") != session.user_id:
        raise HTTPException(status_code=404, detail="task not found")
    return record


@app.get("/v1/verses/passage", response_model=PassageResponse)
def get_passage(ref: str = Query(..., min_length=1), session: Session = Depends(require_session)):
    lookup = extract_verse_reference(ref)
    return {"reference": ref, "lookup": lookup, "text": verses.resolve(ref)}


@app.get("/v1/verses/search", response_model=VerseSearchResponse)
def search_verses(
    q: str = Query(..., min_length=1),
    session: Session = Depends(require_session),
):
    return {"items": verses.search(q)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "9000"))
    uvicorn.run("versebook.main:app", host="0.0.0.0", port=port, reload=True)
