"""Locate and coerce domain data in shape-varying JSON responses."""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from cartly.coercion import (
    as_object,
    first_date,
    first_float,
    first_int,
    first_number,
    first_object,
    first_string,
    normalized_string,
    object_list,
    response_snippet,
)
from cartly.errors import ParseError
from cartly.models import ChatSummary, HistoryMessage, ReceiptItemRecord, ReceiptRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cartly.coercion import JSONObject, JSONValue

logger = logging.getLogger(__name__)

CHAT_ARRAY_KEYS = ("chats", "items", "data", "history")
CHAT_CONTAINER_KEYS = ("data",)
MESSAGE_ARRAY_KEYS = ("messages", "history", "items", "data", "conversation")
MESSAGE_CONTAINER_KEYS = ("history", "data", "chat")
RECORD_ARRAY_KEYS = ("records", "items", "data", "results", "rows")
RECORD_CONTAINER_KEYS = ("data",)

RECORD_ID_KEYS = ("id", "record_id", "recordId")
RECORD_PAYLOAD_KEYS = ("data", "record", "value")
RECEIPT_LINK_KEYS = ("receipt_id", "receiptId")
CREATED_AT_KEYS = ("created_at", "createdAt", "timestamp", "time", "at")

DEFAULT_CURRENCY = "USD"
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
DEFAULT_STORE_NAME = "Unknown Store"
DEFAULT_ITEM_NAME = "Unnamed Item"


def decode_document(data: bytes) -> JSONValue:
    """Parse a response body, raising ParseError if it is not JSON."""
    try:
        return json.loads(data)  # type: ignore[no-any-return]
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"response is not valid JSON ({exc})"
        raise ParseError(msg) from exc


def find_object_array(
    document: JSONValue,
    keys: Sequence[str],
    containers: Sequence[str],
) -> list[JSONObject] | None:
    """Find the first array of objects at the top level or one level down.

    Tries, in order: the document itself, each of ``keys`` on the document,
    then each of ``keys`` inside each object named by ``containers``.
    Returns None when no candidate location holds an array of objects.
    """
    rows = object_list(document)
    if rows is not None:
        return rows

    root = as_object(document)
    if root is None:
        return None

    for key in keys:
        rows = object_list(root.get(key))
        if rows is not None:
            return rows

    for container_key in containers:
        container = as_object(root.get(container_key))
        if container is None:
            continue
        for key in keys:
            rows = object_list(container.get(key))
            if rows is not None:
                return rows

    return None


def _rows_or_empty(
    document: JSONValue,
    keys: Sequence[str],
    containers: Sequence[str],
    context: str,
) -> list[JSONObject]:
    rows = find_object_array(document, keys, containers)
    if rows is None:
        logger.error(
            "context=%s_unrecognized response=%s",
            context,
            response_snippet(json.dumps(document, default=str)),
        )
        return []
    return rows


def find_record_rows(document: JSONValue) -> list[JSONObject]:
    """Return the record rows of a records response, or an empty list."""
    rows = find_object_array(document, RECORD_ARRAY_KEYS, RECORD_CONTAINER_KEYS)
    if rows is None and isinstance(document, dict):
        nested = as_object(document.get("records"))
        if nested is not None:
            rows = object_list(nested.get("items"))
    if rows is None:
        logger.error(
            "context=extract_records_unrecognized response=%s",
            response_snippet(json.dumps(document, default=str)),
        )
        return []
    return rows


def record_sources(row: JSONObject) -> tuple[JSONObject, ...]:
    """The row itself, followed by its nested payload object if any."""
    payload = first_object(row, RECORD_PAYLOAD_KEYS)
    if payload is None:
        return (row,)
    return (row, payload)


def extract_chat_summaries(document: JSONValue) -> list[ChatSummary]:
    """Chat threads sorted by most recent activity first."""
    rows = _rows_or_empty(document, CHAT_ARRAY_KEYS, CHAT_CONTAINER_KEYS, "extract_chat_summaries")

    summaries: list[ChatSummary] = []
    for row in rows:
        chat_id = first_string(row, ("chat_id", "chatID", "id"))
        if chat_id is None:
            continue
        title = first_string(row, ("title", "name", "summary", "last_message"))
        summaries.append(
            ChatSummary(
                chat_id=chat_id,
                title=title or f"Chat {chat_id[:8]}",
                updated_at=first_date(
                    row,
                    (
                        "updated_at",
                        "updatedAt",
                        "last_time",
                        "last_updated",
                        "lastUpdated",
                        "last_message_at",
                        "lastMessageAt",
                        "timestamp",
                        "time",
                        "at",
                    ),
                ),
                created_at=first_date(row, ("created_at", "createdAt", "created", "timestamp", "time", "at")),
                message_count=first_int(row, ("message_count", "messageCount", "count")),
            )
        )

    summaries.sort(key=lambda s: s.activity_at, reverse=True)
    return summaries


def _join_parts(parts: list[JSONValue], keys: Sequence[str]) -> str | None:
    texts: list[str] = []
    for part in parts:
        if isinstance(part, dict):
            text = first_string(part, keys)
        else:
            text = normalized_string(part)
        if text is not None:
            texts.append(text)
    joined = "\n".join(texts).strip()
    return joined or None


def extract_message_content(item: JSONObject) -> str | None:
    """Text of one history row, whatever envelope it arrives in."""
    direct = first_string(item, ("content", "text", "message", "value", "output_text", "input_text"))
    if direct is not None:
        return direct

    content = item.get("content")
    if isinstance(content, list):
        text = _join_parts(content, ("text", "content", "value", "output_text", "input_text"))
        if text is not None:
            return text

    content_object = as_object(content)
    if content_object is not None:
        text = first_string(content_object, ("text", "output_text", "input_text"))
        if text is not None:
            return text
        parts = content_object.get("parts")
        if isinstance(parts, list):
            text = _join_parts(parts, ("text",))
            if text is not None:
                return text

    parts = item.get("parts")
    if isinstance(parts, list):
        text = _join_parts(parts, ("text",))
        if text is not None:
            return text

    message = as_object(item.get("message"))
    if message is not None:
        return extract_message_content(message)

    return None


def extract_history_messages(document: JSONValue) -> list[HistoryMessage]:
    """Messages of one thread in server order."""
    rows = _rows_or_empty(document, MESSAGE_ARRAY_KEYS, MESSAGE_CONTAINER_KEYS, "extract_history")

    messages: list[HistoryMessage] = []
    for row in rows:
        content = extract_message_content(row)
        if content is None:
            continue
        message = as_object(row.get("message"))
        sources = (row, message) if message else (row,)
        role = first_string(sources, ("role", "speaker", "type")) or "assistant"
        messages.append(
            HistoryMessage(
                role=role.lower(),
                content=content,
                created_at=first_date(sources, ("event_time", *CREATED_AT_KEYS)),
            )
        )

    if rows and not messages:
        logger.error(
            "context=extract_history_messages_dropped rows=%d first_row=%s",
            len(rows),
            response_snippet(json.dumps(rows[0], default=str)),
        )
    return messages


def _receipt_from_row(row: JSONObject, now: datetime) -> ReceiptRecord | None:
    sources = record_sources(row)
    record_id = first_string(row, RECORD_ID_KEYS)
    receipt_id = first_string(sources, RECEIPT_LINK_KEYS) or record_id
    if record_id is None:
        record_id = receipt_id
    if record_id is None or receipt_id is None:
        return None

    purchased_at = (
        first_date(sources, ("purchased_at", "purchasedAt", "date", "transaction_date", "transactionDate"))
        or first_date(sources, CREATED_AT_KEYS)
        or now
    )
    captured_at = first_date(sources, CREATED_AT_KEYS) or purchased_at
    currency = (first_string(sources, ("currency", "currency_code")) or "").upper()
    if not CURRENCY_PATTERN.match(currency):
        currency = DEFAULT_CURRENCY

    return ReceiptRecord(
        id=record_id,
        receipt_id=receipt_id,
        store_name=first_string(sources, ("store_name", "storeName", "merchant", "name")) or DEFAULT_STORE_NAME,
        total=first_number(sources, ("total", "amount", "grand_total", "sum")) or Decimal(0),
        currency=currency,
        purchased_at=purchased_at,
        captured_at=captured_at,
        raw_text=first_string(sources, ("raw_text", "rawText", "ocr_text", "ocrText")) or "",
    )


def extract_receipt_records(document: JSONValue, now: datetime | None = None) -> list[ReceiptRecord]:
    """Receipt rows sorted by purchase date, newest first.

    Rows without any usable identifier are dropped.
    """
    now = now or datetime.now(tz=UTC)
    records: list[ReceiptRecord] = []
    for row in find_record_rows(document):
        try:
            record = _receipt_from_row(row, now)
        except ValueError:
            logger.warning(
                "context=extract_receipt_dropped row=%s",
                response_snippet(json.dumps(row, default=str)),
                exc_info=True,
            )
            continue
        if record is not None:
            records.append(record)

    records.sort(key=lambda r: r.purchased_at, reverse=True)
    return records


def extract_receipt_item_records(document: JSONValue) -> list[ReceiptItemRecord]:
    """Receipt item rows in server order.

    Rows without an id or without a link to a receipt are dropped.
    """
    items: list[ReceiptItemRecord] = []
    for row in find_record_rows(document):
        sources = record_sources(row)
        record_id = first_string(row, RECORD_ID_KEYS)
        receipt_id = first_string(sources, RECEIPT_LINK_KEYS)
        if record_id is None or receipt_id is None:
            continue
        items.append(
            ReceiptItemRecord(
                id=record_id,
                receipt_id=receipt_id,
                item_name=first_string(sources, ("item_name", "itemName", "name")) or DEFAULT_ITEM_NAME,
                quantity=first_float(sources, ("quantity", "qty")),
                unit_price=first_float(sources, ("unit_price", "unitPrice", "price")),
                line_total=first_float(sources, ("line_total", "lineTotal", "total", "amount")),
                category=first_string(sources, ("category",)),
            )
        )
    return items


def receipt_to_row(record: ReceiptRecord) -> JSONObject:
    """Serialise a receipt as a records row that resolves back to itself."""
    return {
        "id": record.id,
        "created_at": record.captured_at.isoformat(),
        "data": {
            "receipt_id": record.receipt_id,
            "store_name": record.store_name,
            "total": str(record.total),
            "currency": record.currency,
            "purchased_at": record.purchased_at.isoformat(),
            "raw_text": record.raw_text,
        },
    }


def extract_assistant_content(document: JSONValue) -> str:
    """Assistant text of a non-streaming chat completion."""
    root = as_object(document)
    if root is None:
        msg = "response is not a JSON object"
        raise ParseError(msg)

    choices = object_list(root.get("choices"))
    if choices:
        message = as_object(choices[0].get("message")) or {}
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
        if isinstance(content, list):
            text = "".join(
                part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
            if text:
                return text

    output = object_list(root.get("output"))
    if output:
        parts = object_list(output[0].get("content")) or []
        if parts and isinstance(parts[0].get("text"), str) and parts[0]["text"]:
            return parts[0]["text"]  # type: ignore[no-any-return]

    msg = "assistant text content missing"
    raise ParseError(msg)
