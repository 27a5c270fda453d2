"""Request bodies sent to the Mnexium API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class RecordsContext(BaseModel):
    """Records sub-context of an ``mnx`` block."""

    learn: str | None = None
    recall: bool | None = None
    tables: list[str] | None = None
    sync: bool | None = None


class MnxContext(BaseModel):
    """Per-request memory, history and records switches."""

    subject_id: str
    chat_id: str
    history: bool = False
    learn: bool = False
    recall: bool = False
    summarize: str | None = None
    system_prompt: str | None = None
    records: RecordsContext | None = None
    log: bool = True


class ChatMessage(BaseModel):
    role: str
    content: str


class ImageURL(BaseModel):
    url: str


class ContentPart(BaseModel):
    """One part of a multi-modal message."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: ImageURL | None = None

    @classmethod
    def from_image_url(cls, url: str) -> ContentPart:
        return cls(type="image_url", image_url=ImageURL(url=url))


class VisionChatMessage(BaseModel):
    role: str
    content: list[ContentPart]


class ChatRequest(BaseModel):
    """Body of ``POST /api/v1/chat/completions``."""

    model: str
    messages: list[ChatMessage]
    temperature: float
    mnx: MnxContext
    stream: bool | None = None


class VisionChatRequest(BaseModel):
    """Chat completion whose messages carry image content parts."""

    model: str
    messages: list[VisionChatMessage]
    temperature: float
    mnx: MnxContext
    stream: bool | None = None


class SchemaField(BaseModel):
    type: str
    required: bool


class RecordSchema(BaseModel):
    fields: dict[str, SchemaField]


class SchemaRequest(BaseModel):
    """Body of ``POST /api/v1/records/schemas``."""

    type_name: str
    schema_: RecordSchema = Field(serialization_alias="schema")
    subject_id: str
    mnx: MnxContext


class LegacySchemaRequest(BaseModel):
    """Older schema declaration shape with fields at the top level."""

    type_name: str
    fields: dict[str, SchemaField]
    subject_id: str
    mnx: MnxContext


class RecordsQueryRequest(BaseModel):
    """Body of ``POST /api/v1/records/<table>/query``."""

    where: dict[str, str]
    order_by: str | None = None
    limit: int | None = None
    offset: int | None = None


class CreateRecordRequest(BaseModel):
    """Body of ``POST /api/v1/records/<table>``."""

    subject_id: str
    data: dict[str, Any]
    mnx: MnxContext


def dump_payload(payload: BaseModel | dict[str, Any]) -> dict[str, Any]:
    """Render a request body as JSON-ready data, omitting unset optionals."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return payload
