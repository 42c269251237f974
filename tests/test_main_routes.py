import json

import pytest
from argon2 import PasswordHasher
from fastapi import BackgroundTasks, HTTPException
from starlette.requests import Request

import versebook.main as main_mod
from versebook import assistant, auth, tasks, verses
from versebook.auth import Session
from versebook.blobs import LocalBlobStore
from versebook.documents import MemoryDocuments
from versebook.entries import EntryStore
from versebook.jwt_utils import create_access_token
from versebook.links import LinkStore
from versebook.models import (
    AskRequest,
    AuthLoginRequest,
    AuthRegisterRequest,
    ChatSendRequest,
    EntryCreateRequest,
    EntryUpdateRequest,
    LinkCreateRequest,
    PointChatRequest,
    PointCreateRequest,
    VerseAddRequest,
)

SESSION = Session(user_id="user-1")
OTHER = Session(user_id="user-2")


def _request(headers=None):
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw})


def _status(exc_info) -> int:
    return exc_info.value.status_code


def _create(store, session=SESSION, **fields):
    payload = EntryCreateRequest(**{"title": "Note", "type": "text", **fields})
    return main_mod.create_entry(payload, session=session, store=store)


def test_create_and_get_entry_with_payload():
    store = EntryStore(MemoryDocuments())

    created = _create(store, content="Hello")
    fetched = main_mod.get_entry(created["id"], session=SESSION, store=store)

    assert fetched["payload"] == {"kind": "text", "text": "Hello"}
    assert fetched["user_id"] == "user-1"
    assert fetched["bible_verses"] == []


def test_entries_are_scoped_to_owner():
    store = EntryStore(MemoryDocuments())
    created = _create(store)
    _create(store, session=OTHER, title="Theirs")

    with pytest.raises(HTTPException) as exc:
        main_mod.get_entry(created["id"], session=OTHER, store=store)
    assert _status(exc) == 404
    listed = main_mod.list_entries(session=SESSION, store=store)
    assert [e["id"] for e in listed["items"]] == [created["id"]]


def test_update_entry_errors():
    store = EntryStore(MemoryDocuments())
    created = _create(store)

    with pytest.raises(HTTPException) as exc:
        main_mod.update_entry(created["id"], EntryUpdateRequest(type="song"), session=SESSION, store=store)
    assert _status(exc) == 409

    updated = main_mod.update_entry(
        created["id"], EntryUpdateRequest(title="Renamed"), session=SESSION, store=store
    )
    assert updated["title"] == "Renamed"
    with pytest.raises(HTTPException) as exc:
        main_mod.update_entry(
            created["id"],
            EntryUpdateRequest(title="Stale", expected_version=1),
            session=SESSION,
            store=store,
        )
    assert _status(exc) == 409


def test_delete_entry_route():
    store = EntryStore(MemoryDocuments())
    created = _create(store)
    assert main_mod.delete_entry(created["id"], session=SESSION, store=store) == {"deleted": True}
    with pytest.raises(HTTPException):
        main_mod.delete_entry(created["id"], session=SESSION, store=store)


def test_ask_entry_records_failed_answer(monkeypatch):
    store = EntryStore(MemoryDocuments())
    created = _create(store)

    def broken(_messages):
        raise assistant.ExternalServiceError("down")

    monkeypatch.setattr(assistant, "complete", broken)

    result = main_mod.ask_entry(created["id"], AskRequest(question="Why?"), session=SESSION, store=store)

    assert result["ok"] is False
    assert result["answer"] == assistant.ENTRY_ASK_APOLOGY
    assert result["ai_conversations"][-1]["ok"] is False


def test_add_entry_verse_requires_known_verse(monkeypatch):
    store = EntryStore(MemoryDocuments())
    created = _create(store)

    monkeypatch.setattr(verses, "get_passage", lambda _ref: None)
    with pytest.raises(HTTPException) as exc:
        main_mod.add_entry_verse(created["id"], VerseAddRequest(verse="Nope 1:1"), session=SESSION, store=store)
    assert _status(exc) == 422

    monkeypatch.setattr(verses, "get_passage", lambda _ref: "For God so loved")
    updated = main_mod.add_entry_verse(
        created["id"], VerseAddRequest(verse="John 3:16"), session=SESSION, store=store
    )
    assert updated["bible_verses"] == ["John 3:16"]

    updated = main_mod.remove_entry_verse(created["id"], 0, session=SESSION, store=store)
    assert updated["bible_verses"] == []


def test_chat_creates_then_continues_entry(monkeypatch):
    store = EntryStore(MemoryDocuments())
    replies = iter(
        [
            {"content": "Pray without ceasing.", "category": "Practice", "related_verses": ["1 Thess 5:17"]},
            {"content": "Also give thanks.", "category": "", "related_verses": []},
        ]
    )
    monkeypatch.setattr(assistant, "chat_turn", lambda *_args: next(replies))
    monkeypatch.setattr(verses, "find_related_verses", lambda _content: [])

    first = main_mod.send_chat_message(
        ChatSendRequest(message="How should I pray every single day of the week?"),
        BackgroundTasks(),
        session=SESSION,
        store=store,
    )
    entry = first["entry"]
    assert entry["type"] == "chat"
    assert entry["title"] == "How should I pray every single..."
    assert entry["category"] == "Practice"
    assert first["task_id"] is None

    second = main_mod.send_chat_message(
        ChatSendRequest(entry_id=entry["id"], message="And then?"),
        BackgroundTasks(),
        session=SESSION,
        store=store,
    )
    assert [m["role"] for m in second["entry"]["messages"]] == ["user", "assistant", "user", "assistant"]
    assert second["entry"]["category"] == "Practice"


def test_chat_failure_is_not_persisted(monkeypatch):
    store = EntryStore(MemoryDocuments())

    def broken(*_args):
        raise assistant.ExternalServiceError("down")

    monkeypatch.setattr(assistant, "chat_turn", broken)

    with pytest.raises(HTTPException) as exc:
        main_mod.send_chat_message(ChatSendRequest(message="hi"), BackgroundTasks(), session=SESSION, store=store)
    assert _status(exc) == 502
    assert store.list_by_user("user-1") == []


def test_link_routes():
    documents = MemoryDocuments()
    store = EntryStore(documents)
    links = LinkStore(documents)
    a = _create(store, title="A")
    b = _create(store, title="B")

    created = main_mod.create_link(
        a["id"], LinkCreateRequest(target_entry_id=b["id"]), session=SESSION, store=store, links=links
    )
    again = main_mod.create_link(
        b["id"], LinkCreateRequest(target_entry_id=a["id"]), session=SESSION, store=store, links=links
    )
    assert created["created"] is True
    assert again == {"created": False, "link": None}

    listed = main_mod.list_links(b["id"], session=SESSION, store=store, links=links)
    assert [e["id"] for e in listed["entries"]] == [a["id"]]

    with pytest.raises(HTTPException) as exc:
        main_mod.delete_link(created["link"]["id"], session=OTHER, links=links)
    assert _status(exc) == 404
    assert main_mod.delete_link(created["link"]["id"], session=SESSION, links=links) == {"deleted": True}


def test_pathway_routes_and_point_chat(monkeypatch):
    store = EntryStore(MemoryDocuments())
    entry = _create(
        store,
        type="pathway",
        content=json.dumps({"pathwayPoints": [{"title": "Start", "description": ""}]}),
    )

    updated = main_mod.insert_point(
        entry["id"],
        PointCreateRequest(index=1, title="Next", primary_verse="  ", additional_verses=["John 1:1", ""]),
        session=SESSION,
        store=store,
    )
    points = updated["payload"]["points"]
    assert [p["title"] for p in points] == ["Start", "Next"]
    assert points[1]["primaryVerse"] is None
    assert points[1]["additionalVerses"] == ["John 1:1"]

    with pytest.raises(HTTPException) as exc:
        main_mod.complete_point(entry["id"], 7, session=SESSION, store=store)
    assert _status(exc) == 404

    def broken(_messages):
        raise assistant.ExternalServiceError("down")

    monkeypatch.setattr(assistant, "complete", broken)
    result = main_mod.ask_point(
        entry["id"], 1, PointChatRequest(question="Meaning?"), session=SESSION, store=store, blobs=None
    )
    assert result["ok"] is False
    assert result["messages"] == [
        {"role": "user", "content": "Meaning?"},
        {"role": "assistant", "content": assistant.ASK_APOLOGY, "failed": True},
    ]
    chat = main_mod.get_point_chat(entry["id"], 1, session=SESSION, store=store)
    assert len(chat["messages"]) == 2


def test_pathway_route_rejects_broken_content():
    store = EntryStore(MemoryDocuments())
    entry = _create(store, type="pathway", content="not json")
    with pytest.raises(HTTPException) as exc:
        main_mod.complete_point(entry["id"], 0, session=SESSION, store=store)
    assert _status(exc) == 422


def test_audio_upload_schedules_transcription(monkeypatch, tmp_path):
    documents = MemoryDocuments()
    monkeypatch.setattr(main_mod, "DOCUMENT_BACKEND", "memory")
    monkeypatch.setattr(main_mod, "_MEMORY_DOCUMENTS", documents)
    monkeypatch.setattr(assistant, "transcribe", lambda *_args, **_kwargs: "Be still and know")
    store = EntryStore(documents)
    blobs = LocalBlobStore(str(tmp_path), "http://blobs.test")
    entry = _create(store, type="audio", title="Voice memo")
    background = BackgroundTasks()

    result = main_mod.upload_audio(
        entry["id"],
        _request({"Content-Type": "audio/webm"}),
        background,
        body=b"RIFF....",
        session=SESSION,
        store=store,
        blobs=blobs,
    )

    assert result["entry"]["audio_url"].startswith("http://blobs.test/audio/")
    assert result["entry"]["audio_url"].endswith(".webm")
    assert tasks.get_task(result["task_id"])["status"] == tasks.PENDING

    for task in background.tasks:
        task.func(*task.args, **task.kwargs)

    assert store.get_by_id(entry["id"])["content"] == "Be still and know"
    status = main_mod.get_task_status(result["task_id"], session=SESSION)
    assert status["status"] == tasks.SUCCEEDED
    with pytest.raises(HTTPException):
        main_mod.get_task_status(result["task_id"], session=OTHER)


def test_image_upload_only_for_poems(tmp_path):
    store = EntryStore(MemoryDocuments())
    blobs = LocalBlobStore(str(tmp_path), "http://blobs.test")
    note = _create(store)
    poem = _create(store, type="poem", title="Psalm")

    with pytest.raises(HTTPException) as exc:
        main_mod.upload_image(note["id"], _request(), body=b"img", session=SESSION, store=store, blobs=blobs)
    assert _status(exc) == 400

    result = main_mod.upload_image(
        poem["id"], _request({"Content-Type": "image/png"}), body=b"img", session=SESSION, store=store, blobs=blobs
    )
    assert result["entry"]["image_url"] == f"http://blobs.test/poems/user-1/{poem['id']}"


def test_require_session():
    documents = MemoryDocuments()
    user = documents.insert("users", {"email": "ruth@example.com", "password_hash": "x"})
    token, _ = create_access_token(user["id"], "ruth@example.com")

    session = main_mod.require_session(_request({"Authorization": f"Bearer {token}"}), documents=documents)
    assert session == Session(user_id=user["id"], email="ruth@example.com")

    with pytest.raises(HTTPException) as exc:
        main_mod.require_session(_request(), documents=documents)
    assert _status(exc) == 401
    with pytest.raises(HTTPException) as exc:
        main_mod.require_session(_request({"Authorization": "Bearer nope"}), documents=documents)
    assert _status(exc) == 401


def test_register_and_login(monkeypatch):
    monkeypatch.setattr(auth, "PASSWORD_HASHER", PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))
    documents = MemoryDocuments()

    registered = main_mod.register(
        AuthRegisterRequest(email="Ruth@Example.com", password="correct horse battery"), documents=documents
    )
    assert registered["email"] == "ruth@example.com"

    with pytest.raises(HTTPException) as exc:
        main_mod.register(AuthRegisterRequest(email="ruth@example.com", password="correct horse battery"), documents=documents)
    assert _status(exc) == 409
    with pytest.raises(HTTPException) as exc:
        main_mod.register(AuthRegisterRequest(email="naomi@example.com", password="short"), documents=documents)
    assert _status(exc) == 400

    logged_in = main_mod.login(
        AuthLoginRequest(email="ruth@example.com", password="correct horse battery"), documents=documents
    )
    assert logged_in["user_id"] == registered["user_id"]
    with pytest.raises(HTTPException) as exc:
        main_mod.login(AuthLoginRequest(email="ruth@example.com", password="wrong password!!"), documents=documents)
    assert _status(exc) == 401


def test_passage_route(monkeypatch):
    monkeypatch.setattr(verses, "get_passage", lambda _ref: "Psalm 23:1 The LORD is my shepherd")
    result = main_mod.get_passage(ref="psalm 23 1", session=SESSION)
    assert result == {
        "reference": "psalm 23 1",
        "lookup": "psalm 23:1",
        "text": "Psalm 23:1 The LORD is my shepherd",
    }


def test_healthz():
    assert main_mod.healthz()["ok"] is True


def test_narration_failure_is_visible_on_task(monkeypatch):
    documents = MemoryDocuments()
    monkeypatch.setattr(main_mod, "DOCUMENT_BACKEND", "memory")
    monkeypatch.setattr(main_mod, "_MEMORY_DOCUMENTS", documents)

    def broken(_text):
        raise assistant.ExternalServiceError("tts down")

    monkeypatch.setattr(assistant, "synthesize", broken)
    store = EntryStore(documents)
    entry = _create(store, content="The LORD is my shepherd")
    background = BackgroundTasks()

    result = main_mod.request_narration(entry["id"], background, session=SESSION, store=store)
    for task in background.tasks:
        task.func(*task.args, **task.kwargs)

    record = tasks.get_task(result["task_id"])
    assert record["status"] == tasks.FAILED
    assert "tts down" in record["error"]
    assert store.get_by_id(entry["id"])["content"] == "The LORD is my shepherd"


def test_first_point_route_on_empty_pathway():
    store = EntryStore(MemoryDocuments())
    entry = _create(store, type="pathway", title="Study")

    updated = main_mod.insert_point(
        entry["id"], PointCreateRequest(index=0, title="first"), session=SESSION, store=store
    )

    assert [p["title"] for p in updated["payload"]["points"]] == ["first"]


def test_patch_can_clear_optional_fields():
    store = EntryStore(MemoryDocuments())
    created = _create(store, description="draft", image_url="http://img", bible_verses=["John 1:1"])

    updated = main_mod.update_entry(
        created["id"],
        EntryUpdateRequest(description=None, image_url=None, title=None, bible_verses=None),
        session=SESSION,
        store=store,
    )

    assert updated["description"] is None
    assert updated["image_url"] is None
    assert updated["bible_verses"] == []
    assert updated["title"] == "Note"

    untouched = main_mod.update_entry(
        created["id"], EntryUpdateRequest(category="Teaching"), session=SESSION, store=store
    )
    assert untouched["category"] == "Teaching"
    assert untouched["bible_verses"] == []


def test_point_chat_conflicts_when_point_moves(monkeypatch):
    store = EntryStore(MemoryDocuments())
    entry = _create(
        store,
        type="pathway",
        content=json.dumps({"pathwayPoints": [{"title": "Start", "description": ""}]}),
    )
    real_ask = assistant.ask

    def ask_while_editing(*args, **kwargs):
        main_mod.pathways.insert_point(
            store, SESSION, entry["id"], 0, main_mod.PathwayPoint(title="Inserted")
        )
        return real_ask(*args, **kwargs)

    monkeypatch.setattr(assistant, "complete", lambda _messages: {"role": "assistant", "content": "Grace."})
    monkeypatch.setattr(assistant, "ask", ask_while_editing)

    with pytest.raises(HTTPException) as exc:
        main_mod.ask_point(
            entry["id"], 0, PointChatRequest(question="Meaning?"), session=SESSION, store=store, blobs=None
        )

    assert _status(exc) == 409
    assert main_mod.get_point_chat(entry["id"], 0, session=SESSION, store=store)["messages"] == []
    assert main_mod.get_point_chat(entry["id"], 1, session=SESSION, store=store)["messages"] == []
