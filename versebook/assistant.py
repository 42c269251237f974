import json
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests

from versebook.config import (
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    OPENAI_CHAT_MODEL,
    OPENAI_STT_MODEL,
    OPENAI_TIMEOUT_SEC,
    OPENAI_TTS_MODEL,
    OPENAI_TTS_VOICE,
    TTS_MAX_CHARS,
)
from versebook.content import PathwayPoint, content_as_text
from versebook.events import log_ai_event

ASK_APOLOGY = "I'm sorry, there was an error processing your request. Please try again later."
ENTRY_ASK_APOLOGY = "Sorry, I encountered an error. Please try again."

STUDY_SYSTEM_PROMPT = (
    "You are a helpful Bible study assistant. Your task is to help users understand Bible "
    "verses, theological concepts, and pathway study points.\n\n"
    "The current study context is:\n{context}"
)
ENTRY_SYSTEM_PROMPT = "You are a helpful biblical assistant that provides insights about Bible-related content."

CATEGORIES = (
    "Person, Place, Event, Object, Theme, Symbol, Prophecy, Teaching, Genealogy, Covenant, "
    "Doctrine, Practice, Virtue/Vice, Group, Literary Type, Time Period, Miracle, Relationship"
)
STRUCTURED_TAIL = (
    "For each response, include a structured response at the end in the format "
    '[JSON_RESPONSE]{"category": "one of: ' + CATEGORIES + '", '
    '"relatedVerses": ["verse1", "verse2", "verse3"]}[/JSON_RESPONSE]. '
    "Choose the single most appropriate category that best describes the main topic of discussion."
)
CHAT_SYSTEM_PROMPT = (
    "You are a helpful assistant that provides thoughtful answers and includes relevant Bible "
    "verses in your responses whenever possible. Your goal is to provide spiritual guidance "
    "alongside practical information. " + STRUCTURED_TAIL
)
CHAT_CONTINUE_PROMPT = (
    "This is a continuation of a previous conversation. The topic is: {title}. Please ensure "
    "your responses are informative, helpful, and include relevant Bible verses when possible. "
    + STRUCTURED_TAIL
)

STRUCTURED_PATTERN = re.compile(r"\[JSON_RESPONSE\]([\s\S]*?)\[/JSON_RESPONSE\]")


class ExternalServiceError(RuntimeError):
    pass


@dataclass
class AssistantReply:
    answer: str
    audio_url: Optional[str] = None
    ok: bool = True


def _headers() -> dict:
    if not OPENAI_API_KEY:
        raise ExternalServiceError("OpenAI API key is missing")
    return {"Authorization": f"Bearer {OPENAI_API_KEY}"}


def _post(path: str, **kwargs) -> requests.Response:
    start = time.perf_counter()
    try:
        res = requests.post(
            f"{OPENAI_BASE_URL}{path}",
            headers=_headers(),
            timeout=OPENAI_TIMEOUT_SEC,
            **kwargs,
        )
        res.raise_for_status()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else None
        log_ai_event("ai_error", {"path": path, "error": "http_error", "status": status})
        raise ExternalServiceError(f"{path} failed with status {status}") from exc
    except requests.RequestException as exc:
        log_ai_event("ai_error", {"path": path, "error": type(exc).__name__})
        raise ExternalServiceError(f"{path} request failed") from exc
    log_ai_event("ai_latency", {"path": path, "elapsed_ms": int((time.perf_counter() - start) * 1000)})
    return res


def complete(messages: List[dict]) -> dict:
    """One chat completion; returns the assistant message dict."""
    res = _post(
        "/chat/completions",
        json={"model": OPENAI_CHAT_MODEL, "messages": messages, "temperature": 0.7},
    )
    try:
        message = res.json()["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        log_ai_event("ai_error", {"path": "/chat/completions", "error": "malformed_response"})
        raise ExternalServiceError("invalid response from chat completion") from exc
    if not isinstance(message, dict):
        log_ai_event("ai_error", {"path": "/chat/completions", "error": "malformed_response"})
        raise ExternalServiceError("invalid response from chat completion")
    if not message.get("content"):
        raise ExternalServiceError("empty chat completion")
    return message


def synthesize(text: str) -> bytes:
    if not (text or "").strip():
        raise ValueError("empty text cannot be converted to speech")
    trimmed = text if len(text) <= TTS_MAX_CHARS else text[:TTS_MAX_CHARS] + "..."
    res = _post(
        "/audio/speech",
        json={
            "model": OPENAI_TTS_MODEL,
            "input": f"Read the following text in a warm, male voice: '{trimmed}'",
            "voice": OPENAI_TTS_VOICE,
        },
    )
    return res.content


def transcribe(audio: bytes, filename: str = "recording.mp3", content_type: str = "audio/mpeg") -> str:
    if not audio:
        raise ValueError("empty audio cannot be transcribed")
    res = _post(
        "/audio/transcriptions",
        files={"file": (filename, audio, content_type)},
        data={"model": OPENAI_STT_MODEL, "response_format": "text"},
    )
    return res.text.strip()


def ask(context: str, conversation: List[dict], speak=None) -> AssistantReply:
    """Answer the last turn of ``conversation`` within a study ``context``.

    Failures come back as an apology with ``ok=False``. ``speak`` turns the
    answer text into an audio URL; its failure leaves the answer intact.
    """
    messages = [{"role": "system", "content": STUDY_SYSTEM_PROMPT.format(context=context)}]
    messages += [{"role": m["role"], "content": m["content"]} for m in conversation]
    try:
        answer = complete(messages)["content"]
    except ExternalServiceError as exc:
        log_ai_event("ask_failed", {"error": str(exc), "turns": len(conversation)})
        return AssistantReply(answer=ASK_APOLOGY, ok=False)

    audio_url = None
    if speak is not None:
        try:
            audio_url = speak(answer)
        except Exception as exc:
            log_ai_event("ask_audio_failed", {"error": type(exc).__name__})
    return AssistantReply(answer=answer, audio_url=audio_url)


def ask_about_entry(entry: dict, question: str) -> AssistantReply:
    prompt = (
        "Here is information about an entry in my Bible library:\n\n"
        f"{build_entry_context(entry)}\n\nQuestion: {question}"
    )
    try:
        answer = complete(
            [
                {"role": "system", "content": ENTRY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ]
        )["content"]
    except ExternalServiceError as exc:
        log_ai_event("entry_ask_failed", {"error": str(exc), "entry_id": entry.get("id")})
        return AssistantReply(answer=ENTRY_ASK_APOLOGY, ok=False)
    return AssistantReply(answer=answer)


def build_entry_context(entry: dict) -> str:
    lines = [f"Title: {entry.get('title') or 'Untitled'}"]
    if entry.get("type"):
        lines.append(f"Type: {entry['type']}")
    if entry.get("content"):
        lines.append(f"Content: {content_as_text(entry.get('type', ''), entry['content'])}")
    if entry.get("description"):
        lines.append(f"Description: {entry['description']}")
    if entry.get("category"):
        lines.append(f"Category: {entry['category']}")
    if entry.get("bible_verses"):
        lines.append(f"Bible Verses: {', '.join(entry['bible_verses'])}")
    return "\n".join(lines) + "\n"


def build_point_context(point: PathwayPoint, question: str) -> str:
    additional = ", ".join(point.additional_verses) if point.additional_verses else "None"
    return (
        f"Pathway point: {point.title}\n"
        f"Description: {point.description}\n"
        f"Primary Bible verse: {point.primary_verse or 'None'}\n"
        f"Additional verses to read: {additional}\n\n"
        f"User question: {question}"
    )


def extract_structured_reply(text: str) -> Tuple[str, str, List[str]]:
    """Split a chat answer into (content, category, related verses)."""
    match = STRUCTURED_PATTERN.search(text or "")
    if not match:
        return text, "", []
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        log_ai_event("structured_reply_invalid", {"length": len(match.group(1))})
        return text, "", []
    if not isinstance(data, dict):
        return text, "", []
    related = data.get("relatedVerses") or []
    if not isinstance(related, list):
        related = []
    content = STRUCTURED_PATTERN.sub("", text, count=1).strip()
    return content, str(data.get("category") or ""), [str(v) for v in related]


def chat_turn(title: Optional[str], history: List[dict], user_message: str) -> dict:
    """Next assistant turn for a chat entry.

    Raises ExternalServiceError so the caller can decide not to persist.
    """
    if history:
        system = CHAT_CONTINUE_PROMPT.format(title=title or "Untitled")
    else:
        system = CHAT_SYSTEM_PROMPT
    messages = [{"role": "system", "content": system}]
    messages += [{"role": m["role"], "content": m["content"]} for m in history]
    messages.append({"role": "user", "content": user_message})
    raw = complete(messages)["content"]
    content, category, related = extract_structured_reply(raw)
    return {"content": content, "category": category, "related_verses": related}
