"""Domain models returned by the Mnexium client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

ROOT_TABLE = "receipts"
ITEMS_TABLE = "receipt_items"
RECORD_TABLES = (ROOT_TABLE, ITEMS_TABLE)
METADATA_MISSING_ACTION = "records_sync_metadata_missing"

_BEGINNING_OF_TIME = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Identity:
    """Subject and thread identifiers for one device."""

    subject_id: str
    chat_id: str


@dataclass(frozen=True)
class ChatSummary:
    """One conversation thread as listed by the history API."""

    chat_id: str
    title: str
    updated_at: datetime | None = None
    created_at: datetime | None = None
    message_count: int | None = None

    @property
    def activity_at(self) -> datetime:
        """Best available activity timestamp, used for ordering."""
        return self.updated_at or self.created_at or _BEGINNING_OF_TIME


@dataclass(frozen=True)
class HistoryMessage:
    """One turn of a conversation thread."""

    role: str
    content: str
    created_at: datetime | None = None

    @property
    def kind(self) -> str:
        """Classify the free-form role as user, assistant or system."""
        if self.role in ("user", "human"):
            return "user"
        if self.role in ("system", "developer"):
            return "system"
        return "assistant"


class ReceiptRecord(BaseModel):
    """A receipt row stored in the ``receipts`` table."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    receipt_id: str = Field(min_length=1)
    store_name: str
    total: Decimal
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    purchased_at: datetime
    captured_at: datetime
    raw_text: str = ""


class ReceiptItemRecord(BaseModel):
    """A line item stored in the ``receipt_items`` table."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    receipt_id: str = Field(min_length=1)
    item_name: str
    quantity: float | None = None
    unit_price: float | None = None
    line_total: float | None = None
    category: str | None = None


@dataclass(frozen=True)
class RecordMutation:
    """A single record write reported by the server."""

    id: str | None = None
    table: str | None = None
    action: str | None = None

    @property
    def key(self) -> tuple[str | None, str | None, str | None]:
        """Identity triple used for deduplication."""
        return (self.id, self.table, self.action)


@dataclass(frozen=True)
class RecordsSyncResult:
    """Deduplicated outcome of one records persistence call."""

    created: tuple[RecordMutation, ...] = ()
    updated: tuple[RecordMutation, ...] = ()
    actions: tuple[str, ...] = ()

    @property
    def all_record_ids(self) -> list[str]:
        """Record ids in created-then-updated order."""
        return [m.id for m in (*self.created, *self.updated) if m.id is not None]

    @property
    def primary_record_id(self) -> str | None:
        """Id of the root receipt record, else the first id written."""
        for mutation in (*self.created, *self.updated):
            if (mutation.table or "").lower() == ROOT_TABLE and mutation.id is not None:
                return mutation.id
        ids = self.all_record_ids
        return ids[0] if ids else None

    @property
    def metadata_missing(self) -> bool:
        """True when the response carried no record write metadata."""
        return METADATA_MISSING_ACTION in self.actions
