"""Merge the two places a persistence response reports record writes.

A records-sync chat response may describe its writes in an explicit outcome
block (``created``/``updated``/... keyed lists) and in a lower-level mutation
log (``mnx.records``). Either may be missing or partial, so both are read
and merged into one deduplicated ``RecordsSyncResult``. Nothing here raises:
a response without any write metadata is tagged, not rejected, because the
server may still have written the records.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from cartly.coercion import as_object, first_object, first_string, normalized_string, object_list, response_snippet
from cartly.models import METADATA_MISSING_ACTION, RecordMutation, RecordsSyncResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cartly.coercion import JSONObject, JSONValue

logger = logging.getLogger(__name__)

MAX_SEARCH_DEPTH = 6

CREATED_KEYS = ("created", "inserted", "upserted", "writes")
UPDATED_KEYS = ("updated", "modified")
OUTCOME_KEYS = (*CREATED_KEYS, *UPDATED_KEYS, "actions")
OUTCOME_CONTAINER_KEYS = ("records", "record_sync", "records_sync")
OUTCOME_SEARCH_KEYS = ("mnx", "data", "response", "result", "meta", "metadata")

ID_KEYS = ("id", "record_id", "recordId", "recordID")
TABLE_KEYS = ("table", "type", "type_name", "typeName", "record_type")
ACTION_KEYS = ("action", "operation", "op")
LOG_ID_KEYS = ("recordId", "record_id", "recordID", "id")
LOG_TABLE_KEYS = ("typeName", "type_name", "record_type", "table", "type")
LOG_ACTION_KEYS = ("action", "operation", "op", "mode")

DEFAULT_LOG_ACTION = "upsert"
UPDATE_MARKERS = ("update", "modify", "patch")


def _is_outcome_block(obj: JSONObject) -> bool:
    return any(key in obj for key in OUTCOME_KEYS)


def find_outcome_block(value: JSONValue, depth: int = 0) -> JSONObject | None:
    """Depth-limited search for the object describing created/updated records."""
    if depth > MAX_SEARCH_DEPTH:
        return None

    if isinstance(value, dict):
        if _is_outcome_block(value):
            return value

        nested = first_object(value, OUTCOME_CONTAINER_KEYS)
        if nested is not None and _is_outcome_block(nested):
            return nested

        for key in OUTCOME_SEARCH_KEYS:
            if key in value:
                found = find_outcome_block(value[key], depth + 1)
                if found is not None:
                    return found

        for nested_value in value.values():
            found = find_outcome_block(nested_value, depth + 1)
            if found is not None:
                return found

    if isinstance(value, list):
        for entry in value:
            found = find_outcome_block(entry, depth + 1)
            if found is not None:
                return found

    return None


def find_mutation_log(value: JSONValue, depth: int = 0) -> list[JSONObject]:
    """Depth-limited search for the first non-empty ``mnx.records`` list."""
    if depth > MAX_SEARCH_DEPTH:
        return []

    if isinstance(value, dict):
        mnx = as_object(value.get("mnx"))
        if mnx is not None:
            entries = object_list(mnx.get("records"))
            if entries:
                return entries
        children: Iterable[JSONValue] = value.values()
    elif isinstance(value, list):
        children = value
    else:
        return []

    for child in children:
        entries = find_mutation_log(child, depth + 1)
        if entries:
            return entries
    return []


def _outcome_entry(entry: JSONValue, table: str | None = None) -> RecordMutation | None:
    if isinstance(entry, str):
        return RecordMutation(id=normalized_string(entry), table=table)
    obj = as_object(entry)
    if obj is None:
        return None
    return RecordMutation(
        id=first_string(obj, ID_KEYS),
        table=first_string(obj, TABLE_KEYS) or table,
        action=first_string(obj, ACTION_KEYS),
    )


def extract_outcome_mutations(block: JSONObject, keys: Sequence[str]) -> list[RecordMutation]:
    """Read mutations listed under ``keys`` of an outcome block.

    Entries may be bare id strings, objects with id/table/action, a single
    such object, or a mapping of table name to entries. Only an explicit
    action is recorded; the outcome key decides created versus updated.
    """
    mutations: list[RecordMutation] = []

    for key in keys:
        value = block.get(key)

        if isinstance(value, list):
            candidates = [_outcome_entry(entry) for entry in value]
        elif isinstance(value, str):
            candidates = [_outcome_entry(value)]
        elif isinstance(value, dict) and any(k in value for k in ID_KEYS):
            candidates = [_outcome_entry(value)]
        elif isinstance(value, dict):
            candidates = []
            for table_name, table_entries in value.items():
                if not isinstance(table_entries, list):
                    continue
                candidates.extend(_outcome_entry(entry, table=table_name) for entry in table_entries)
        else:
            continue

        mutations.extend(m for m in candidates if m is not None)

    return mutations


def extract_explicit_actions(block: JSONObject) -> list[str]:
    actions = block.get("actions")
    if not isinstance(actions, list):
        return []
    result: list[str] = []
    for value in actions:
        if isinstance(value, dict):
            action = first_string(value, ACTION_KEYS)
        else:
            action = normalized_string(value)
        if action is not None:
            result.append(action)
    return result


def extract_log_mutations(entries: list[JSONObject]) -> list[RecordMutation]:
    """Mutations from the log; entries without an action are upserts."""
    return [
        RecordMutation(
            id=first_string(entry, LOG_ID_KEYS),
            table=first_string(entry, LOG_TABLE_KEYS),
            action=first_string(entry, LOG_ACTION_KEYS) or DEFAULT_LOG_ACTION,
        )
        for entry in entries
    ]


def classify_mutations(
    mutations: list[RecordMutation],
) -> tuple[list[RecordMutation], list[RecordMutation]]:
    """Split log mutations into (created, updated) by their action wording."""
    created: list[RecordMutation] = []
    updated: list[RecordMutation] = []
    for mutation in mutations:
        action = (mutation.action or DEFAULT_LOG_ACTION).lower()
        if any(marker in action for marker in UPDATE_MARKERS):
            updated.append(mutation)
        else:
            created.append(mutation)
    return created, updated


def deduplicate_mutations(mutations: Iterable[RecordMutation]) -> tuple[RecordMutation, ...]:
    """Drop repeated (id, table, action) triples, keeping first-seen order."""
    seen: set[tuple[str | None, str | None, str | None]] = set()
    result: list[RecordMutation] = []
    for mutation in mutations:
        if mutation.key in seen:
            continue
        seen.add(mutation.key)
        result.append(mutation)
    return tuple(result)


def deduplicate_actions(actions: Iterable[str | None]) -> tuple[str, ...]:
    seen: set[str] = set()
    result: list[str] = []
    for action in actions:
        normalized = normalized_string(action)
        if normalized is None or normalized in seen:
            continue
        seen.add(normalized)
        result.append(normalized)
    return tuple(result)


def reconcile(document: JSONValue, raw: bytes | None = None) -> RecordsSyncResult:
    """Build the records sync result of one persistence response."""
    outcome_created: list[RecordMutation] = []
    outcome_updated: list[RecordMutation] = []
    explicit_actions: list[str] = []

    block = find_outcome_block(document)
    if block is not None:
        outcome_created = extract_outcome_mutations(block, CREATED_KEYS)
        outcome_updated = extract_outcome_mutations(block, UPDATED_KEYS)
        explicit_actions = extract_explicit_actions(block)

    log_mutations = extract_log_mutations(find_mutation_log(document))
    log_created, log_updated = classify_mutations(log_mutations)

    created = deduplicate_mutations([*outcome_created, *log_created])
    updated = deduplicate_mutations([*outcome_updated, *log_updated])

    actions = deduplicate_actions([*explicit_actions, *(m.action for m in log_mutations)])
    if not actions:
        actions = deduplicate_actions(m.action for m in (*created, *updated))

    if log_mutations and (len(created) != len(outcome_created) or len(updated) != len(outcome_updated)):
        logger.info(
            "context=records_sync_augmented_with_mutation_log created=%d updated=%d",
            len(created),
            len(updated),
        )

    if not created and not updated:
        actions = deduplicate_actions([*actions, METADATA_MISSING_ACTION])
        snippet = response_snippet(raw if raw is not None else json.dumps(document, default=str))
        logger.error("context=records_sync_result_missing response=%s", snippet)

    return RecordsSyncResult(created=created, updated=updated, actions=actions)
