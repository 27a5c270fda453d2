"""Capture a receipt image into Mnexium Records.

The capture path runs in four steps: declare the record schemas (once per
client), ask a vision model to read the receipt image into JSON, ask a
records-sync chat call to persist that JSON into ``receipts`` and
``receipt_items``, then reconcile the write metadata of that response.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import uuid
from typing import TYPE_CHECKING, Any

from cartly.errors import HTTPStatusError, InvalidInputError, ParseError
from cartly.models import ITEMS_TABLE, RECORD_TABLES, ROOT_TABLE
from cartly.payloads import (
    ChatMessage,
    ChatRequest,
    ContentPart,
    LegacySchemaRequest,
    MnxContext,
    RecordsContext,
    RecordSchema,
    SchemaField,
    SchemaRequest,
    VisionChatMessage,
    VisionChatRequest,
    dump_payload,
)
from cartly.reconciler import reconcile
from cartly.resolver import decode_document, extract_assistant_content
from cartly.transport import CHAT_COMPLETIONS_PATH

if TYPE_CHECKING:
    from cartly.models import RecordsSyncResult
    from cartly.transport import Transport

logger = logging.getLogger(__name__)

SCHEMAS_PATH = "/api/v1/records/schemas"
PERSISTENCE_MODEL = "gpt-4.1-mini"
OCR_CHAT_PREFIX = "OCR-"
WRITE_FAILED_MARKER = "records_sync_write_failed"

UUID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
CANONICAL_UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

RECEIPTS_SCHEMA = RecordSchema(
    fields={
        "store_name": SchemaField(type="string", required=True),
        "total": SchemaField(type="number", required=True),
        "currency": SchemaField(type="string", required=True),
        "purchased_at": SchemaField(type="datetime", required=False),
        "raw_text": SchemaField(type="string", required=False),
    }
)

RECEIPT_ITEMS_SCHEMA = RecordSchema(
    fields={
        "receipt_id": SchemaField(type=f"ref:{ROOT_TABLE}", required=True),
        "item_name": SchemaField(type="string", required=True),
        "quantity": SchemaField(type="number", required=False),
        "unit_price": SchemaField(type="number", required=False),
        "line_total": SchemaField(type="number", required=False),
        "category": SchemaField(type="string", required=False),
    }
)

_PERSISTENCE_INSTRUCTIONS = """\
Persist this parsed receipt into Mnexium Records. Only create or update rows in tables receipts and receipt_items.
Receipts schema fields are: total, currency, raw_text, store_name, purchased_at (do not include receipt_id on receipts).
Receipt_items schema fields are: category, quantity, item_name, line_total, receipt_id, unit_price.
Link each receipt_items.receipt_id to the parent receipts record_id.\
"""


def extract_json_object(text: str) -> str:
    """Strip code fences, then cut the outermost ``{...}`` span."""
    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = trimmed.replace("```json", "").replace("```", "").strip()

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end == -1 or end < start:
        return trimmed
    return trimmed[start : end + 1]


def normalized_json_object_string(text: str) -> str:
    """Re-serialise the JSON object in model output with sorted keys."""
    candidate = extract_json_object(text)
    try:
        document = json.loads(candidate)
    except json.JSONDecodeError as exc:
        msg = f"assistant output is not a JSON object ({exc})"
        raise ParseError(msg) from exc
    if not isinstance(document, dict):
        msg = "assistant output is not a JSON object"
        raise ParseError(msg)
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)


def resolve_uuid_chat_id(chat_id: str) -> str:
    """Canonical lowercase UUID for a thread id.

    A UUID embedded in a longer thread id is accepted. Anything else is
    rejected with InvalidInputError.
    """
    match = UUID_PATTERN.search(chat_id.strip())
    if match is None:
        msg = "chat_id must be a valid UUID"
        raise InvalidInputError(msg)
    return str(uuid.UUID(match.group(0)))


def image_data_url(image: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")


def build_ocr_request(image: bytes, subject_id: str, *, model: str, system_prompt: str) -> VisionChatRequest:
    """Vision request reading a receipt image, isolated from chat memory."""
    return VisionChatRequest(
        model=model,
        messages=[VisionChatMessage(role="user", content=[ContentPart.from_image_url(image_data_url(image))])],
        temperature=0,
        mnx=MnxContext(
            subject_id=subject_id,
            chat_id=f"{OCR_CHAT_PREFIX}{uuid.uuid4()}",
            system_prompt=system_prompt,
        ),
    )


def build_persistence_request(receipt_json: str, subject_id: str, chat_id: str) -> ChatRequest:
    """Chat request demanding synchronous record writes for one receipt."""
    return ChatRequest(
        model=PERSISTENCE_MODEL,
        messages=[ChatMessage(role="user", content=f"{_PERSISTENCE_INSTRUCTIONS}\n\n{receipt_json}")],
        temperature=0,
        mnx=MnxContext(
            subject_id=subject_id,
            chat_id=chat_id,
            records=RecordsContext(learn="force", recall=False, tables=list(RECORD_TABLES), sync=True),
        ),
        stream=False,
    )


def validate_persistence_request(body: dict[str, Any]) -> None:
    """Reject a persistence body that would not trigger record writes."""
    mnx = body.get("mnx")
    if not isinstance(mnx, dict):
        msg = "persistence request missing mnx object"
        raise InvalidInputError(msg)

    subject_id = mnx.get("subject_id")
    if not isinstance(subject_id, str) or not subject_id.strip():
        msg = "persistence request missing mnx.subject_id"
        raise InvalidInputError(msg)

    chat_id = mnx.get("chat_id")
    if not isinstance(chat_id, str) or not chat_id:
        msg = "persistence request missing mnx.chat_id"
        raise InvalidInputError(msg)
    if not CANONICAL_UUID_PATTERN.match(chat_id):
        msg = "persistence request mnx.chat_id is not a canonical UUID"
        raise InvalidInputError(msg)

    records = mnx.get("records")
    if not isinstance(records, dict):
        msg = "persistence request missing mnx.records"
        raise InvalidInputError(msg)
    if records.get("sync") is not True:
        msg = "persistence request missing mnx.records.sync=true"
        raise InvalidInputError(msg)
    tables = records.get("tables")
    if not isinstance(tables, list) or not set(RECORD_TABLES).issubset(tables):
        msg = "persistence request missing required mnx.records.tables values"
        raise InvalidInputError(msg)


async def declare_schema(
    transport: Transport,
    type_name: str,
    schema: RecordSchema,
    subject_id: str,
    chat_id: str,
) -> None:
    """Declare one record type; an existing declaration counts as success.

    Servers that reject the nested ``schema`` shape with 400/422 get the
    legacy shape with ``fields`` at the top level.
    """
    mnx = MnxContext(subject_id=subject_id, chat_id=chat_id)
    try:
        await transport.send_json(
            SCHEMAS_PATH,
            "POST",
            SchemaRequest(type_name=type_name, schema_=schema, subject_id=subject_id, mnx=mnx),
        )
    except HTTPStatusError as exc:
        if exc.status == 409:
            logger.info("Record schema already declared. type_name=%s", type_name)
            return
        if exc.status not in (400, 422):
            raise
        logger.info("Retrying schema declaration with legacy shape. type_name=%s status=%d", type_name, exc.status)
    else:
        return

    try:
        await transport.send_json(
            SCHEMAS_PATH,
            "POST",
            LegacySchemaRequest(type_name=type_name, fields=schema.fields, subject_id=subject_id, mnx=mnx),
        )
    except HTTPStatusError as exc:
        if exc.status != 409:
            raise
        logger.info("Record schema already declared. type_name=%s", type_name)


class SchemaRegistry:
    """Declares the receipt record schemas at most once.

    Concurrent callers share the declaration already in flight instead of
    sending their own. A failed declaration leaves the registry unset so
    the next capture tries again.
    """

    def __init__(self) -> None:
        self.ensured = False
        self._pending: asyncio.Task[None] | None = None

    async def ensure(self, transport: Transport, subject_id: str, chat_id: str) -> None:
        if self.ensured:
            return
        if self._pending is None:
            self._pending = asyncio.create_task(self._declare_all(transport, subject_id, chat_id))
        pending = self._pending
        try:
            await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

    async def _declare_all(self, transport: Transport, subject_id: str, chat_id: str) -> None:
        await declare_schema(transport, ROOT_TABLE, RECEIPTS_SCHEMA, subject_id, chat_id)
        await declare_schema(transport, ITEMS_TABLE, RECEIPT_ITEMS_SCHEMA, subject_id, chat_id)
        self.ensured = True
        logger.info("Record schemas ensured. tables=%s", ",".join(RECORD_TABLES))


async def extract_receipt_json(
    transport: Transport,
    image: bytes,
    subject_id: str,
    *,
    model: str,
    system_prompt: str,
) -> str:
    """Run the vision call and return the normalised receipt JSON text."""
    request = build_ocr_request(image, subject_id, model=model, system_prompt=system_prompt)
    logger.info("context=receipt_ocr_request chat_id=%s history=false", request.mnx.chat_id)
    data = await transport.send_json(CHAT_COMPLETIONS_PATH, "POST", request)
    content = extract_assistant_content(decode_document(data))
    logger.info("context=receipt_ocr_ai_message message=%s", content)
    return normalized_json_object_string(content)


async def persist_receipt(
    transport: Transport,
    receipt_json: str,
    subject_id: str,
    chat_id: str,
) -> RecordsSyncResult:
    """Send the records-sync request and reconcile its write metadata."""
    body = dump_payload(build_persistence_request(receipt_json, subject_id, chat_id))
    validate_persistence_request(body)

    try:
        data = await transport.send_json(CHAT_COMPLETIONS_PATH, "POST", body)
    except HTTPStatusError as exc:
        if exc.status == 422 and WRITE_FAILED_MARKER in exc.body.lower():
            msg = (
                f"Mnexium records sync failed ({WRITE_FAILED_MARKER}). "
                "Check receipts and receipt_items schema requirements."
            )
            raise ParseError(msg) from exc
        raise

    result = reconcile(decode_document(data), data)
    logger.info(
        "context=receipt_records_synced_via_chat created=%d updated=%d actions=%s",
        len(result.created),
        len(result.updated),
        ",".join(result.actions),
    )
    return result


async def capture_receipt(
    transport: Transport,
    schemas: SchemaRegistry,
    image: bytes,
    subject_id: str,
    chat_id: str,
    *,
    model: str,
    system_prompt: str,
) -> RecordsSyncResult:
    """Schema ensure, OCR, validate and persist one receipt image."""
    if not image:
        msg = "image is required"
        raise InvalidInputError(msg)
    persistence_chat_id = resolve_uuid_chat_id(chat_id)

    await schemas.ensure(transport, subject_id, chat_id)
    receipt_json = await extract_receipt_json(transport, image, subject_id, model=model, system_prompt=system_prompt)
    return await persist_receipt(transport, receipt_json, subject_id, persistence_chat_id)
