"""Entity metadata documents (automation test inputs and test history)."""

from __future__ import annotations

import logging

from doc_store import DocumentNotFound
from trellis.doc_ids import MetadataType, generate_metadata_id

logger = logging.getLogger("trellis.metadata")

METADATA_TYPES = {t.value for t in MetadataType}


def get_entity_metadata(db, metadata_type: str, entity_id: str) -> dict | None:
    try:
        return db.get(generate_metadata_id(metadata_type, entity_id))
    except DocumentNotFound:
        return None


def save_entity_metadata(db, metadata_type: str, entity_id: str, body: dict) -> dict:
    doc_id = generate_metadata_id(metadata_type, entity_id)
    existing = get_entity_metadata(db, metadata_type, entity_id)
    doc = {k: v for k, v in (body or {}).items() if k not in ("_id", "_rev")}
    doc["_id"] = doc_id
    if existing:
        doc["_rev"] = existing["_rev"]
    response = db.put(doc)
    doc["_rev"] = response["rev"]
    return doc


def delete_entity_metadata(db, metadata_type: str, entity_id: str) -> bool:
    """Remove a metadata document; a missing document is not an error."""
    existing = get_entity_metadata(db, metadata_type, entity_id)
    if existing is None:
        return False
    db.remove(existing["_id"], existing["_rev"])
    logger.info("metadata_deleted type=%s entity_id=%s", metadata_type, entity_id)
    return True


def update_test_history(db, automation_id: str, entry: dict) -> dict:
    existing = get_entity_metadata(db, MetadataType.AUTOMATION_TEST_HISTORY.value, automation_id) or {}
    history = list(existing.get("history") or [])
    history.append(entry)
    return save_entity_metadata(db, MetadataType.AUTOMATION_TEST_HISTORY.value, automation_id, {"history": history})
