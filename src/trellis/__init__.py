"""Trellis kernel utilities."""

from .doc_ids import (
    APP_METADATA_ID,
    DocumentType,
    generate_app_id,
    get_dev_app_id,
    get_prod_app_id,
    is_dev_app_id,
)
from .revisions import next_rev, rev_number
from .row_transform import FieldType, coerce_value, coerce_row

__version__ = "2.3.0"

__all__ = [
    "APP_METADATA_ID",
    "DocumentType",
    "FieldType",
    "coerce_row",
    "coerce_value",
    "generate_app_id",
    "get_dev_app_id",
    "get_prod_app_id",
    "is_dev_app_id",
    "next_rev",
    "rev_number",
    "__version__",
]
