"""Typed views over the ``content`` string of an entry.

``content`` is stored as a single string whose shape depends on the entry
type. :func:`parse_content` turns it into one payload model per type and
never raises: content that does not match its type's serialization is
treated as plain text.
"""
import json
from typing import Dict, List, Literal, Optional, Union

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError

ENTRY_TYPES = (
    "chat",
    "link",
    "video",
    "text",
    "audio",
    "song",
    "poem",
    "quote",
    "twitter",
    "youtube",
    "image",
    "pathway",
)

MARKUP_TYPES = {"twitter", "youtube", "link", "video"}


class Completion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    timestamp: str


class PathwayPoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    description: str = ""
    primary_verse: Optional[str] = Field(default=None, alias="primaryVerse")
    additional_verses: Optional[List[str]] = Field(default=None, alias="additionalVerses")
    notes: Optional[str] = None
    completions: Optional[Dict[str, Completion]] = None


class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""


class SongPayload(BaseModel):
    kind: Literal["song"] = "song"
    verses: List[str] = []
    comments: str = ""


class PathwayPayload(BaseModel):
    kind: Literal["pathway"] = "pathway"
    points: List[PathwayPoint] = []


class MarkupPayload(BaseModel):
    kind: Literal["markup"] = "markup"
    html: str = ""
    text: str = ""


class ImagePayload(BaseModel):
    kind: Literal["image"] = "image"
    caption: str = ""


ContentPayload = Union[TextPayload, SongPayload, PathwayPayload, MarkupPayload, ImagePayload]


class PathwayContentError(ValueError):
    pass


def markup_to_text(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def _load_json_object(raw: str) -> Optional[dict]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def parse_song(raw: str) -> SongPayload:
    data = _load_json_object(raw or "")
    if data is None:
        return SongPayload(verses=[raw] if raw else [])
    verses = data.get("verses")
    if not isinstance(verses, list):
        return SongPayload(verses=[raw], comments=str(data.get("comments") or ""))
    return SongPayload(
        verses=[str(v) for v in verses],
        comments=str(data.get("comments") or ""),
    )


def load_pathway(raw: str) -> PathwayPayload:
    """Strict pathway parser used by the pathway mutations.

    Missing content is an empty pathway; anything else must be the
    ``{"pathwayPoints": [...]}`` document.
    """
    if not (raw or "").strip():
        return PathwayPayload()
    data = _load_json_object(raw)
    if data is None or not isinstance(data.get("pathwayPoints"), list):
        raise PathwayContentError("invalid pathway data format")
    try:
        points = [PathwayPoint.model_validate(p) for p in data["pathwayPoints"]]
    except ValidationError as exc:
        raise PathwayContentError("invalid pathway point") from exc
    return PathwayPayload(points=points)


def dump_pathway(payload: PathwayPayload) -> str:
    points = [p.model_dump(by_alias=True, exclude_none=True) for p in payload.points]
    return json.dumps({"pathwayPoints": points}, ensure_ascii=False)


def dump_song(payload: SongPayload) -> str:
    return json.dumps({"verses": payload.verses, "comments": payload.comments}, ensure_ascii=False)


def parse_content(entry_type: str, raw: Optional[str]) -> ContentPayload:
    raw = raw or ""
    if entry_type == "song":
        return parse_song(raw)
    if entry_type == "pathway":
        try:
            return load_pathway(raw)
        except PathwayContentError:
            return TextPayload(text=raw)
    if entry_type in MARKUP_TYPES:
        return MarkupPayload(html=raw, text=markup_to_text(raw))
    if entry_type == "image":
        return ImagePayload(caption=raw)
    return TextPayload(text=raw)


def content_as_text(entry_type: str, raw: Optional[str]) -> str:
    """Readable rendition of ``content`` for prompts and previews."""
    payload = parse_content(entry_type, raw)
    if isinstance(payload, SongPayload):
        text = "\n\n".join(payload.verses)
        if payload.comments:
            text += f"\n\nComments: {payload.comments}"
        return text
    if isinstance(payload, PathwayPayload):
        return json.dumps(
            {"pathwayPoints": [p.model_dump(by_alias=True, exclude_none=True) for p in payload.points]},
            indent=2,
            ensure_ascii=False,
        )
    if isinstance(payload, MarkupPayload):
        return payload.text
    if isinstance(payload, ImagePayload):
        return payload.caption
    return payload.text
