"""Async client for the Mnexium chat, history and records API."""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import aclosing
from typing import TYPE_CHECKING
from urllib.parse import quote

from cartly.errors import InvalidInputError
from cartly.models import ITEMS_TABLE, RECORD_TABLES, ROOT_TABLE
from cartly.payloads import (
    ChatMessage,
    ChatRequest,
    CreateRecordRequest,
    MnxContext,
    RecordsContext,
    RecordsQueryRequest,
)
from cartly.resolver import (
    decode_document,
    extract_assistant_content,
    extract_chat_summaries,
    extract_history_messages,
    extract_receipt_item_records,
    extract_receipt_records,
)
from cartly.streaming import stream_with_fallback
from cartly.transport import CHAT_COMPLETIONS_PATH, Transport
from cartly.workflow import SchemaRegistry, capture_receipt

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from contextlib import AbstractAsyncContextManager
    from datetime import datetime
    from types import TracebackType

    import httpx

    from cartly.config import ServiceConfig
    from cartly.models import (
        ChatSummary,
        HistoryMessage,
        ReceiptItemRecord,
        ReceiptRecord,
        RecordsSyncResult,
    )

logger = logging.getLogger(__name__)

HISTORY_LIST_PATH = "/api/v1/chat/history/list"
HISTORY_READ_PATH = "/api/v1/chat/history/read"
RECORDS_PATH = "/api/v1/records"

CHAT_TEMPERATURE = 0.2


def _non_empty(value: str | None, field: str) -> str:
    """Trimmed value, or InvalidInputError naming the field."""
    normalized = (value or "").strip()
    if not normalized:
        msg = f"{field} is required"
        raise InvalidInputError(msg)
    return normalized


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _clamp(limit: int, upper: int) -> int:
    return max(1, min(limit, upper))


def _path_component(value: str) -> str:
    return quote(value, safe="")


def _table_path(table: str, *parts: str) -> str:
    return "/".join((RECORDS_PATH, table, *(_path_component(p) for p in parts)))


class MnexiumClient:
    """One client per configuration.

    Holds the transport and the record-schema registry; every other piece
    of state lives in the request being made. Use as an async context
    manager, or call ``aclose()`` when done.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.config = config
        self.transport = Transport(config, http_client=http_client, sleep=sleep, jitter=jitter)
        self.schemas = SchemaRegistry()

    async def __aenter__(self) -> MnexiumClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    def _chat_request(self, message: str, subject_id: str, chat_id: str, *, stream: bool) -> ChatRequest:
        return ChatRequest(
            model=self.config.model,
            messages=[ChatMessage(role="user", content=message)],
            temperature=CHAT_TEMPERATURE,
            mnx=MnxContext(
                subject_id=subject_id,
                chat_id=chat_id,
                history=True,
                learn=True,
                recall=True,
                summarize="balanced",
                records=RecordsContext(learn="auto", recall=True, tables=list(RECORD_TABLES)),
            ),
            stream=True if stream else None,
        )

    async def send_chat_message(self, message: str, subject_id: str, chat_id: str) -> str:
        """Send one user message and return the stripped assistant reply."""
        message = _non_empty(message, "message")
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")

        request = self._chat_request(message, subject_id, chat_id, stream=False)
        data = await self.transport.send_json(CHAT_COMPLETIONS_PATH, "POST", request)
        return extract_assistant_content(decode_document(data)).strip()

    async def stream_chat_message(self, message: str, subject_id: str, chat_id: str) -> AsyncIterator[str]:
        """Yield reply fragments as they arrive.

        Servers that cannot stream the request get one non-streaming call
        instead, yielded as a single fragment. Closing the iterator closes
        the connection.
        """
        message = _non_empty(message, "message")
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        request = self._chat_request(message, subject_id, chat_id, stream=True)

        def open_stream() -> AbstractAsyncContextManager[httpx.Response]:
            return self.transport.open_stream(CHAT_COMPLETIONS_PATH, request)

        async def fallback() -> str:
            return await self.send_chat_message(message, subject_id, chat_id)

        async with aclosing(stream_with_fallback(open_stream, fallback)) as chunks:
            async for chunk in chunks:
                yield chunk

    async def list_chats(self, subject_id: str, limit: int = 50) -> list[ChatSummary]:
        subject_id = _non_empty(subject_id, "subject_id")
        data = await self.transport.send_query(
            HISTORY_LIST_PATH,
            "GET",
            [("subject_id", subject_id), ("limit", str(_clamp(limit, 500)))],
        )
        return extract_chat_summaries(decode_document(data))

    async def read_chat_history(self, subject_id: str, chat_id: str, limit: int = 200) -> list[HistoryMessage]:
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        data = await self.transport.send_query(
            HISTORY_READ_PATH,
            "GET",
            [("subject_id", subject_id), ("chat_id", chat_id), ("limit", str(_clamp(limit, 500)))],
        )
        return extract_history_messages(decode_document(data))

    async def list_receipt_records(self, subject_id: str, limit: int = 100) -> list[ReceiptRecord]:
        subject_id = _non_empty(subject_id, "subject_id")
        data = await self.transport.send_query(
            _table_path(ROOT_TABLE),
            "GET",
            [("subject_id", subject_id), ("limit", str(_clamp(limit, 250)))],
        )
        return extract_receipt_records(decode_document(data))

    async def query_receipt_items(self, subject_id: str, receipt_id: str, limit: int = 200) -> list[ReceiptItemRecord]:
        """Items linked to one receipt, ordered by item name."""
        _non_empty(subject_id, "subject_id")
        receipt_id = _non_empty(receipt_id, "receipt_id")
        request = RecordsQueryRequest(
            where={"receipt_id": receipt_id},
            order_by="item_name",
            limit=_clamp(limit, 500),
        )
        data = await self.transport.send_json(_table_path(ITEMS_TABLE, "query"), "POST", request)
        return extract_receipt_item_records(decode_document(data))

    async def create_receipt_record(
        self,
        subject_id: str,
        chat_id: str,
        *,
        store_name: str,
        total: float,
        currency: str,
        purchased_at: datetime,
        raw_text: str = "",
    ) -> None:
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        request = CreateRecordRequest(
            subject_id=subject_id,
            data={
                "store_name": _non_empty(store_name, "store_name"),
                "total": total,
                "currency": _non_empty(currency, "currency").upper(),
                "purchased_at": purchased_at.isoformat(),
                "raw_text": raw_text,
            },
            mnx=MnxContext(subject_id=subject_id, chat_id=chat_id),
        )
        await self.transport.send_json(_table_path(ROOT_TABLE), "POST", request)

    async def create_receipt_item_record(
        self,
        subject_id: str,
        chat_id: str,
        *,
        receipt_id: str,
        item_name: str,
        quantity: float | None = None,
        unit_price: float | None = None,
        line_total: float | None = None,
        category: str | None = None,
    ) -> None:
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        data = {
            "receipt_id": _non_empty(receipt_id, "receipt_id"),
            "item_name": _non_empty(item_name, "item_name"),
            "quantity": quantity,
            "unit_price": unit_price,
            "line_total": line_total,
            "category": _optional(category),
        }
        request = CreateRecordRequest(
            subject_id=subject_id,
            data={key: value for key, value in data.items() if value is not None},
            mnx=MnxContext(subject_id=subject_id, chat_id=chat_id),
        )
        await self.transport.send_json(_table_path(ITEMS_TABLE), "POST", request)

    async def _delete_record(self, table: str, subject_id: str, record_id: str) -> None:
        subject_id = _non_empty(subject_id, "subject_id")
        record_id = _non_empty(record_id, "record_id")
        await self.transport.send_query(_table_path(table, record_id), "DELETE", [("subject_id", subject_id)])
        logger.info("Record deleted. table=%s record_id=%s", table, record_id)

    async def delete_receipt_record(self, subject_id: str, record_id: str) -> None:
        await self._delete_record(ROOT_TABLE, subject_id, record_id)

    async def delete_receipt_item_record(self, subject_id: str, record_id: str) -> None:
        await self._delete_record(ITEMS_TABLE, subject_id, record_id)

    async def ensure_record_schemas(self, subject_id: str, chat_id: str) -> None:
        """Declare the receipt tables once for the lifetime of this client."""
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        await self.schemas.ensure(self.transport, subject_id, chat_id)

    async def capture_receipt_to_records(self, image: bytes, subject_id: str, chat_id: str) -> RecordsSyncResult:
        """Read a JPEG receipt image and persist it into the receipt tables."""
        subject_id = _non_empty(subject_id, "subject_id")
        chat_id = _non_empty(chat_id, "chat_id")
        return await capture_receipt(
            self.transport,
            self.schemas,
            image,
            subject_id,
            chat_id,
            model=self.config.model,
            system_prompt=self.config.ocr_system_prompt,
        )
