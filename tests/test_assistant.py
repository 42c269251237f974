import pytest
import requests

from versebook import assistant
from versebook.content import PathwayPoint


def _fail(*_args, **_kwargs):
    raise assistant.ExternalServiceError("upstream down")


def test_ask_failure_returns_apology(monkeypatch):
    monkeypatch.setattr(assistant, "complete", _fail)

    reply = assistant.ask("context", [{"role": "user", "content": "Why?"}])

    assert reply.answer == assistant.ASK_APOLOGY
    assert reply.ok is False
    assert reply.audio_url is None


def test_ask_keeps_answer_when_speech_fails(monkeypatch):
    monkeypatch.setattr(assistant, "complete", lambda _messages: {"role": "assistant", "content": "Grace."})

    def broken_speak(_text):
        raise RuntimeError("tts down")

    reply = assistant.ask("context", [{"role": "user", "content": "Why?"}], speak=broken_speak)

    assert reply.answer == "Grace."
    assert reply.ok is True
    assert reply.audio_url is None


def test_ask_sends_context_and_history(monkeypatch):
    captured = {}

    def fake_complete(messages):
        captured["messages"] = messages
        return {"role": "assistant", "content": "Answer"}

    monkeypatch.setattr(assistant, "complete", fake_complete)

    reply = assistant.ask(
        "Pathway point: Creation",
        [
            {"role": "user", "content": "first", "audio_url": "x"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ],
        speak=lambda text: f"http://blobs/{len(text)}.mp3",
    )

    assert reply.audio_url == "http://blobs/6.mp3"
    assert captured["messages"][0]["role"] == "system"
    assert "Pathway point: Creation" in captured["messages"][0]["content"]
    assert [m["content"] for m in captured["messages"][1:]] == ["first", "reply", "second"]


def test_ask_about_entry_failure(monkeypatch):
    monkeypatch.setattr(assistant, "complete", _fail)
    reply = assistant.ask_about_entry({"id": "e1", "title": "Note"}, "What?")
    assert reply.answer == assistant.ENTRY_ASK_APOLOGY
    assert reply.ok is False


def test_build_entry_context():
    context = assistant.build_entry_context(
        {"title": "Hymn", "type": "song", "content": '{"verses": ["Holy"], "comments": ""}', "bible_verses": ["Isaiah 6:3"]}
    )
    assert context == "Title: Hymn\nType: song\nContent: Holy\nBible Verses: Isaiah 6:3\n"


def test_build_point_context():
    point = PathwayPoint(title="Creation", description="In the beginning", primary_verse="Genesis 1:1")
    context = assistant.build_point_context(point, "Who created?")
    assert "Primary Bible verse: Genesis 1:1" in context
    assert "Additional verses to read: None" in context
    assert context.endswith("User question: Who created?")


def test_extract_structured_reply():
    text = (
        "David was a king.\n"
        '[JSON_RESPONSE]{"category": "Person", "relatedVerses": ["1 Samuel 16:13"]}[/JSON_RESPONSE]'
    )
    assert assistant.extract_structured_reply(text) == ("David was a king.", "Person", ["1 Samuel 16:13"])


def test_extract_structured_reply_without_block():
    assert assistant.extract_structured_reply("plain") == ("plain", "", [])
    broken = "text [JSON_RESPONSE]{oops[/JSON_RESPONSE]"
    assert assistant.extract_structured_reply(broken) == (broken, "", [])


def test_chat_turn_uses_continuation_prompt(monkeypatch):
    captured = {}

    def fake_complete(messages):
        captured["messages"] = messages
        return {"content": 'Yes. [JSON_RESPONSE]{"category": "Teaching", "relatedVerses": []}[/JSON_RESPONSE]'}

    monkeypatch.setattr(assistant, "complete", fake_complete)

    turn = assistant.chat_turn("Prayer", [{"role": "user", "content": "hi"}], "again")

    assert turn == {"content": "Yes.", "category": "Teaching", "related_verses": []}
    assert "The topic is: Prayer" in captured["messages"][0]["content"]
    assert captured["messages"][-1] == {"role": "user", "content": "again"}


def test_chat_turn_propagates_failure(monkeypatch):
    monkeypatch.setattr(assistant, "complete", _fail)
    with pytest.raises(assistant.ExternalServiceError):
        assistant.chat_turn(None, [], "hello")


def test_missing_api_key_is_external_failure(monkeypatch):
    monkeypatch.setattr(assistant, "OPENAI_API_KEY", "")
    with pytest.raises(assistant.ExternalServiceError):
        assistant.complete([{"role": "user", "content": "hi"}])


def test_request_errors_are_wrapped(monkeypatch):
    monkeypatch.setattr(assistant, "OPENAI_API_KEY", "test-key")

    def broken_post(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(assistant.requests, "post", broken_post)
    with pytest.raises(assistant.ExternalServiceError):
        assistant.synthesize("hello")


def test_synthesize_rejects_empty_text():
    with pytest.raises(ValueError):
        assistant.synthesize("   ")


class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_malformed_completion_becomes_apology(monkeypatch):
    malformed = _FakeResponse({"choices": [{"message": None}]})
    monkeypatch.setattr(assistant, "_post", lambda *_args, **_kwargs: malformed)

    with pytest.raises(assistant.ExternalServiceError):
        assistant.complete([{"role": "user", "content": "hi"}])

    reply = assistant.ask("ctx", [{"role": "user", "content": "Why?"}])
    assert reply.answer == assistant.ASK_APOLOGY
    assert reply.ok is False
    assert assistant.ask_about_entry({"id": "e1", "title": "Note"}, "What?").ok is False
