"""Local persistence of the subject and chat thread identifiers."""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING

from cartly.errors import InvalidInputError
from cartly.models import Identity
from cartly.workflow import resolve_uuid_chat_id

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "cli-user-"


def new_chat_id() -> str:
    return str(uuid.uuid4())


def new_subject_id() -> str:
    return f"{SUBJECT_PREFIX}{uuid.uuid4()}"


class IdentityStore:
    """JSON file holding ``subject_id`` and ``chat_id``.

    Missing or unreadable values are regenerated and written back, so
    ``current_identity()`` always returns a usable identity.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Identity file unreadable, regenerating. path=%s", self.path, exc_info=True)
            return {}
        if not isinstance(document, dict):
            return {}
        return {key: value for key, value in document.items() if isinstance(value, str) and value.strip()}

    def _write(self, identity: Identity) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {"subject_id": identity.subject_id, "chat_id": identity.chat_id}
        self.path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")

    def current_identity(self) -> Identity:
        """Return the stored identity, creating any missing part."""
        stored = self._read()
        subject_id = stored.get("subject_id") or new_subject_id()
        try:
            chat_id = resolve_uuid_chat_id(stored.get("chat_id", ""))
        except InvalidInputError:
            chat_id = new_chat_id()

        identity = Identity(subject_id=subject_id, chat_id=chat_id)
        if stored != {"subject_id": subject_id, "chat_id": chat_id}:
            self._write(identity)
        return identity

    def set_chat_id(self, chat_id: str) -> Identity:
        """Switch to an existing thread; the id must contain a UUID."""
        identity = Identity(subject_id=self.current_identity().subject_id, chat_id=resolve_uuid_chat_id(chat_id))
        self._write(identity)
        return identity

    def start_new_chat(self) -> Identity:
        identity = Identity(subject_id=self.current_identity().subject_id, chat_id=new_chat_id())
        self._write(identity)
        logger.info("Started new chat. chat_id=%s", identity.chat_id)
        return identity
