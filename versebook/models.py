from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

EntryType = Literal[
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
]


class AudioSegment(BaseModel):
    url: str
    timestamp: float
    message_count: int = 0


class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: Optional[str] = None
    audio_url: Optional[str] = None
    category: Optional[str] = None
    related_verses: Optional[List[str]] = None
    bible_verses: Optional[List[str]] = None


class AIConversation(BaseModel):
    question: str
    answer: str
    timestamp: Optional[str] = None
    ok: bool = True


class EntryCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    type: EntryType
    content: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    bible_verses: List[str] = []
    related_verses: List[str] = []
    audio_url: Optional[Union[str, List[str]]] = None
    image_url: Optional[str] = None
    messages: Optional[List[ChatTurn]] = None
    audio_segments: Optional[Dict[str, AudioSegment]] = None


class EntryUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    type: Optional[EntryType] = None
    content: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    bible_verses: Optional[List[str]] = None
    related_verses: Optional[List[str]] = None
    audio_url: Optional[Union[str, List[str]]] = None
    image_url: Optional[str] = None
    messages: Optional[List[ChatTurn]] = None
    audio_segments: Optional[Dict[str, AudioSegment]] = None
    expected_version: Optional[int] = None


class EntryItem(BaseModel):
    id: str
    user_id: str
    type: str
    title: str = ""
    content: Optional[str] = None
    payload: Optional[dict] = None
    description: Optional[str] = None
    category: Optional[str] = None
    bible_verses: List[str] = []
    related_verses: List[str] = []
    audio_url: Optional[Union[str, List[str]]] = None
    image_url: Optional[str] = None
    audio_segments: Optional[Dict[str, AudioSegment]] = None
    ai_conversations: List[AIConversation] = []
    messages: Optional[List[ChatTurn]] = None
    chat_history: Optional[Dict[str, List[dict]]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 1


class EntryListResponse(BaseModel):
    items: List[EntryItem]


class EntryDeleteResponse(BaseModel):
    deleted: bool


class VerseAddRequest(BaseModel):
    verse: str = Field(min_length=1)


class AskRequest(BaseModel):
    question: str = Field(min_length=1)


class AskResponse(BaseModel):
    answer: str
    ok: bool
    ai_conversations: List[AIConversation] = []


class ChatSendRequest(BaseModel):
    entry_id: Optional[str] = None
    message: str = Field(min_length=1)
    narrate: bool = False


class ChatSendResponse(BaseModel):
    entry: EntryItem
    reply: ChatTurn
    task_id: Optional[str] = None


class LinkCreateRequest(BaseModel):
    target_entry_id: str = Field(min_length=1)


class LinkItem(BaseModel):
    id: str
    source_entry_id: str
    target_entry_id: str
    user_id: str
    created_at: Optional[str] = None


class LinkCreateResponse(BaseModel):
    created: bool
    link: Optional[LinkItem] = None


class LinkedEntriesResponse(BaseModel):
    links: List[LinkItem]
    entries: List[EntryItem]


class LinkDeleteResponse(BaseModel):
    deleted: bool


class PointCreateRequest(BaseModel):
    index: int = Field(ge=0)
    title: str = Field(min_length=1)
    description: str = ""
    primary_verse: Optional[str] = None
    additional_verses: Optional[List[str]] = None


class VerseTextRequest(BaseModel):
    verse: str = ""


class NotesRequest(BaseModel):
    notes: str = ""


class PointChatRequest(BaseModel):
    question: str = Field(min_length=1)
    speak: bool = False


class PointChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    audio_url: Optional[str] = None
    failed: Optional[bool] = None


class PointChatResponse(BaseModel):
    messages: List[PointChatMessage]
    ok: bool = True


class MediaUploadResponse(BaseModel):
    entry: EntryItem
    task_id: Optional[str] = None


class TaskResponse(BaseModel):
    task_id: str
    kind: str
    status: str
    entry_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PassageResponse(BaseModel):
    reference: str
    lookup: str
    text: str


class VerseSearchResponse(BaseModel):
    items: List[dict]


class AuthRegisterRequest(BaseModel):
    email: str
    password: str


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    user_id: str
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    email: str | None = None


class AuthMeResponse(BaseModel):
    user_id: str
    email: str
    created_at: str | None = None
    last_login: str | None = None
