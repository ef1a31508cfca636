"""Built-in schema documents and the optional sample dataset for new apps."""

from __future__ import annotations

from datetime import datetime, timezone

from trellis.doc_ids import DocumentType, generate_row_id
from trellis.roles import BuiltinRole
from trellis.row_transform import coerce_row

DEFAULT_DATASOURCE_ID = f"{DocumentType.DATASOURCE.value}_bb_default"
USERS_TABLE_ID = f"{DocumentType.TABLE.value}_users"
EMPLOYEES_TABLE_ID = f"{DocumentType.TABLE.value}_bb_employees"
JOBS_TABLE_ID = f"{DocumentType.TABLE.value}_bb_jobs"

USERS_TABLE_SCHEMA = {
    "_id": USERS_TABLE_ID,
    "type": "table",
    "views": {},
    "name": "Users",
    "primaryDisplay": "email",
    "schema": {
        "email": {"type": "string", "name": "email", "constraints": {"type": "string", "email": True, "presence": True}},
        "firstName": {"type": "string", "name": "firstName"},
        "lastName": {"type": "string", "name": "lastName"},
        "roleId": {
            "type": "options",
            "name": "roleId",
            "constraints": {
                "inclusion": [BuiltinRole.ADMIN, BuiltinRole.POWER, BuiltinRole.BASIC, BuiltinRole.PUBLIC],
            },
        },
        "status": {"type": "options", "name": "status", "constraints": {"inclusion": ["active", "inactive"]}},
    },
}

_EMPLOYEES_SCHEMA = {
    "First Name": {"type": "string", "name": "First Name"},
    "Last Name": {"type": "string", "name": "Last Name"},
    "Email": {"type": "string", "name": "Email"},
    "Start Date": {"type": "datetime", "name": "Start Date"},
    "Hourly Rate": {"type": "number", "name": "Hourly Rate"},
    "Manager": {"type": "boolean", "name": "Manager"},
    "Jobs": {"type": "link", "name": "Jobs", "tableId": JOBS_TABLE_ID, "fieldName": "Assigned"},
}

_JOBS_SCHEMA = {
    "Title": {"type": "string", "name": "Title"},
    "Status": {"type": "options", "name": "Status", "constraints": {"inclusion": ["Scheduled", "In Progress", "Done"]}},
    "Quote": {"type": "number", "name": "Quote"},
    "Notes": {"type": "longform", "name": "Notes"},
    "Assigned": {"type": "link", "name": "Assigned", "tableId": EMPLOYEES_TABLE_ID, "fieldName": "Jobs"},
}

_JOBS = [
    ("j1", {"Title": "Kitchen refit", "Status": "Scheduled", "Quote": "4200.50", "Notes": None}),
    ("j2", {"Title": "Garden wall", "Status": "In Progress", "Quote": "1800", "Notes": "Needs permit"}),
    ("j3", {"Title": "Roof survey", "Status": "Done", "Quote": "350", "Notes": ""}),
]

_EMPLOYEES = [
    ("e1", {"First Name": "Ada", "Last Name": "Byrne", "Email": "ada@example.com",
            "Start Date": datetime(2021, 3, 1, tzinfo=timezone.utc), "Hourly Rate": "32.5",
            "Manager": "true", "Jobs": ["j1", "j2"]}),
    ("e2", {"First Name": "Sam", "Last Name": "Okafor", "Email": "sam@example.com",
            "Start Date": datetime(2022, 9, 12, tzinfo=timezone.utc), "Hourly Rate": "24",
            "Manager": "false", "Jobs": "j3"}),
]


def _table(table_id: str, name: str, schema: dict, primary: str) -> dict:
    return {
        "_id": table_id,
        "type": "table",
        "name": name,
        "sourceId": DEFAULT_DATASOURCE_ID,
        "primaryDisplay": primary,
        "schema": schema,
        "views": {},
    }


def _rows(table_id: str, schema: dict, items: list[tuple[str, dict]], link_table: str, link_column: str) -> list[dict]:
    docs = []
    for key, values in items:
        values = dict(values)
        links = values.get(link_column)
        if isinstance(links, list):
            values[link_column] = [generate_row_id(link_table, link) for link in links]
        elif isinstance(links, str):
            values[link_column] = generate_row_id(link_table, links)
        row = coerce_row(schema, values)
        row.update({"_id": generate_row_id(table_id, key), "tableId": table_id, "type": "row"})
        docs.append(row)
    return docs


def build_default_docs() -> list[dict]:
    """Datasource, tables and rows of the sample dataset, ready for ``bulk_docs``."""
    datasource = {
        "_id": DEFAULT_DATASOURCE_ID,
        "type": "datasource",
        "name": "Sample Data",
        "source": "TRELLIS_DB",
        "config": {},
    }
    return [
        datasource,
        _table(EMPLOYEES_TABLE_ID, "Employees", _EMPLOYEES_SCHEMA, "Email"),
        _table(JOBS_TABLE_ID, "Jobs", _JOBS_SCHEMA, "Title"),
        *_rows(EMPLOYEES_TABLE_ID, _EMPLOYEES_SCHEMA, _EMPLOYEES, JOBS_TABLE_ID, "Jobs"),
        *_rows(JOBS_TABLE_ID, _JOBS_SCHEMA, _JOBS, EMPLOYEES_TABLE_ID, "Assigned"),
    ]
