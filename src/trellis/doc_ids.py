"""Document and application identifiers."""

from __future__ import annotations

import uuid
from enum import Enum

SEPARATOR = "_"
UNICODE_MAX = "￰"
APP_METADATA_ID = "app_metadata"
DESIGN_DOC_ID = "_design/database"
APP_PREFIX = "app" + SEPARATOR
APP_DEV_PREFIX = APP_PREFIX + "dev" + SEPARATOR


class DocumentType(str, Enum):
    APP_METADATA = APP_METADATA_ID
    TABLE = "ta"
    ROW = "ro"
    LAYOUT = "layout"
    SCREEN = "screen"
    AUTOMATION = "au"
    WEBHOOK = "wh"
    METADATA = "metadata"
    DATASOURCE = "datasource"


class MetadataType(str, Enum):
    AUTOMATION_TEST_INPUT = "automationTestInput"
    AUTOMATION_TEST_HISTORY = "automationTestHistory"


def _new_id() -> str:
    return uuid.uuid4().hex


def generate_doc_id(doc_type: DocumentType, *parts: str) -> str:
    return SEPARATOR.join([doc_type.value, *parts]) if parts else f"{doc_type.value}{SEPARATOR}{_new_id()}"


def generate_automation_id() -> str:
    return generate_doc_id(DocumentType.AUTOMATION)


def generate_webhook_id() -> str:
    return generate_doc_id(DocumentType.WEBHOOK)


def generate_row_id(table_id: str, row_id: str | None = None) -> str:
    return generate_doc_id(DocumentType.ROW, table_id, row_id or _new_id())


def generate_metadata_id(metadata_type: MetadataType | str, entity_id: str) -> str:
    value = metadata_type.value if isinstance(metadata_type, MetadataType) else metadata_type
    return generate_doc_id(DocumentType.METADATA, value, entity_id)


def generate_app_id(tenant_id: str | None = None) -> str:
    """Return a new production app id, scoped to the tenant when one is given."""
    if tenant_id:
        return f"{APP_PREFIX}{tenant_id}{SEPARATOR}{_new_id()}"
    return f"{APP_PREFIX}{_new_id()}"


def is_dev_app_id(app_id: str | None) -> bool:
    return isinstance(app_id, str) and app_id.startswith(APP_DEV_PREFIX)


def is_app_id(value: str | None) -> bool:
    return isinstance(value, str) and value.startswith(APP_PREFIX)


def get_dev_app_id(app_id: str) -> str:
    if is_dev_app_id(app_id):
        return app_id
    if not is_app_id(app_id):
        raise ValueError(f"not an app id: {app_id}")
    return APP_DEV_PREFIX + app_id[len(APP_PREFIX) :]


def get_prod_app_id(app_id: str) -> str:
    if not is_dev_app_id(app_id):
        return app_id
    return APP_PREFIX + app_id[len(APP_DEV_PREFIX) :]


def get_doc_params(doc_type: DocumentType, doc_id: str | None = None, include_docs: bool = True) -> dict:
    """Key-range params selecting every document of a type (or with an id prefix)."""
    start = f"{doc_type.value}{SEPARATOR}{doc_id or ''}"
    return {"startkey": start, "endkey": start + UNICODE_MAX, "include_docs": include_docs}


def get_row_params(table_id: str | None = None, include_docs: bool = True) -> dict:
    return get_doc_params(DocumentType.ROW, f"{table_id}{SEPARATOR}" if table_id else None, include_docs)
