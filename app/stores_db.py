"""Postgres-backed document store (one row per document, JSONB bodies)."""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Iterable

from psycopg2.extras import Json

from app.db import ensure_schema, execute, execute_batch, fetch_all, fetch_one, get_conn, init_pool
from doc_store import Doc, DocFilter, DocumentConflict, DocumentNotFound, _check_write, parse_dump, replaces_target
from trellis.revisions import next_rev

logger = logging.getLogger("trellis.stores_db")


def _body(doc: Doc) -> dict:
    return {k: v for k, v in doc.items() if k not in ("_id", "_rev")}


def _doc(row: dict) -> Doc:
    data = copy.deepcopy(row.get("data") or {})
    return {"_id": row["doc_id"], "_rev": row["rev"], **data}


def _ensure_db(conn, name: str) -> None:
    execute(
        conn,
        "insert into app_databases (db_name) values (%s) on conflict (db_name) do nothing",
        [name],
        query_name="app_databases.ensure",
    )


def _upsert_rows(conn, name: str, docs: Iterable[Doc]) -> int:
    rows = [[name, doc["_id"], doc["_rev"], Json(_body(doc))] for doc in docs]
    if not rows:
        return 0
    return execute_batch(
        conn,
        """
        insert into app_documents (db_name, doc_id, rev, data, updated_at)
        values (%s,%s,%s,%s,now())
        on conflict (db_name, doc_id) do update set rev=excluded.rev, data=excluded.data, updated_at=now()
        """,
        rows,
        query_name="app_documents.upsert_batch",
    )


class DbAppDatabase:
    def __init__(self, store: "DbDocumentStore", name: str, skip_setup: bool = False) -> None:
        self._store = store
        self.name = name
        self._skip_setup = skip_setup

    def exists(self) -> bool:
        return self._store.exists(self.name)

    def _check_readable(self) -> None:
        if self._skip_setup and not self.exists():
            raise DocumentNotFound("Database does not exist", self.name)

    def get(self, doc_id: str) -> Doc:
        self._check_readable()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select doc_id, rev, data from app_documents where db_name=%s and doc_id=%s",
                [self.name, doc_id],
                query_name="app_documents.get",
            )
        if not row:
            raise DocumentNotFound("missing", doc_id)
        return _doc(row)

    def _put(self, conn, doc: Doc, force: bool) -> dict:
        record = copy.deepcopy(doc)
        record.setdefault("_id", uuid.uuid4().hex)
        existing = fetch_one(
            conn,
            "select rev from app_documents where db_name=%s and doc_id=%s for update",
            [self.name, record["_id"]],
            query_name="app_documents.lock",
        )
        _check_write({"_rev": existing["rev"]} if existing else None, record, force)
        record["_rev"] = next_rev(existing["rev"] if existing else record.get("_rev"), record)
        execute(
            conn,
            """
            insert into app_documents (db_name, doc_id, rev, data, updated_at)
            values (%s,%s,%s,%s,now())
            on conflict (db_name, doc_id) do update set rev=excluded.rev, data=excluded.data, updated_at=now()
            """,
            [self.name, record["_id"], record["_rev"], Json(_body(record))],
            query_name="app_documents.put",
        )
        return {"ok": True, "id": record["_id"], "rev": record["_rev"]}

    def put(self, doc: Doc, force: bool = False) -> dict:
        with get_conn() as conn:
            _ensure_db(conn, self.name)
            return self._put(conn, doc, force)

    def bulk_docs(self, docs: Iterable[Doc]) -> list[dict]:
        results = []
        for doc in docs:
            try:
                results.append(self.put(doc))
            except DocumentConflict as exc:
                results.append({"id": exc.doc_id, "error": "conflict", "reason": exc.message})
        return results

    def all_docs(
        self,
        startkey: str | None = None,
        endkey: str | None = None,
        include_docs: bool = False,
        keys: list[str] | None = None,
    ) -> dict:
        self._check_readable()
        with get_conn() as conn:
            total = fetch_one(
                conn,
                "select count(*) as n from app_documents where db_name=%s",
                [self.name],
                query_name="app_documents.count",
            )
            if keys is not None:
                found = fetch_all(
                    conn,
                    "select doc_id, rev, data from app_documents where db_name=%s and doc_id = any(%s)",
                    [self.name, list(keys)],
                    query_name="app_documents.by_keys",
                )
                by_id = {r["doc_id"]: r for r in found}
                rows = [by_id[k] for k in keys if k in by_id]
            else:
                sql = "select doc_id, rev, data from app_documents where db_name=%s"
                params: list = [self.name]
                if startkey is not None:
                    sql += ' and doc_id >= %s collate "C"'
                    params.append(startkey)
                if endkey is not None:
                    sql += ' and doc_id <= %s collate "C"'
                    params.append(endkey)
                sql += ' order by doc_id collate "C"'
                rows = fetch_all(conn, sql, params, query_name="app_documents.range")
        result_rows = []
        for row in rows:
            item = {"id": row["doc_id"], "key": row["doc_id"], "value": {"rev": row["rev"]}}
            if include_docs:
                item["doc"] = _doc(row)
            result_rows.append(item)
        return {"total_rows": (total or {}).get("n", 0), "rows": result_rows}

    def remove(self, doc_id: str, rev: str | None) -> dict:
        with get_conn() as conn:
            existing = fetch_one(
                conn,
                "select rev from app_documents where db_name=%s and doc_id=%s for update",
                [self.name, doc_id],
                query_name="app_documents.lock",
            )
            if not existing:
                raise DocumentNotFound("missing", doc_id)
            if rev != existing["rev"]:
                raise DocumentConflict("Document update conflict", doc_id)
            execute(
                conn,
                "delete from app_documents where db_name=%s and doc_id=%s",
                [self.name, doc_id],
                query_name="app_documents.delete",
            )
        return {"ok": True, "id": doc_id, "rev": next_rev(rev, {"_deleted": True})}

    def destroy(self) -> dict:
        with get_conn() as conn:
            execute(conn, "delete from app_databases where db_name=%s", [self.name], query_name="app_databases.delete")
        logger.info("db_destroyed name=%s", self.name)
        return {"ok": True}

    def load(self, dump: str | bytes) -> dict:
        docs = parse_dump(dump)
        with get_conn() as conn:
            _ensure_db(conn, self.name)
            written = _upsert_rows(conn, self.name, [d for d in docs if d.get("_rev")])
            for doc in docs:
                if not doc.get("_rev"):
                    self._put(conn, doc, force=True)
                    written += 1
        return {"ok": True, "docs_written": written}


class DbDocumentStore:
    def __init__(self, create_schema: bool = True) -> None:
        init_pool()
        if create_schema:
            ensure_schema()

    def db(self, name: str, skip_setup: bool = False) -> DbAppDatabase:
        return DbAppDatabase(self, name, skip_setup=skip_setup)

    def exists(self, name: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as found from app_databases where db_name=%s",
                [name],
                query_name="app_databases.exists",
            )
        return bool(row)

    def list_databases(self, prefix: str | None = None) -> list[str]:
        with get_conn() as conn:
            if prefix:
                rows = fetch_all(
                    conn,
                    'select db_name from app_databases where left(db_name, %s) = %s order by db_name collate "C"',
                    [len(prefix), prefix],
                    query_name="app_databases.list_prefix",
                )
            else:
                rows = fetch_all(conn, 'select db_name from app_databases order by db_name collate "C"', query_name="app_databases.list")
        return [r["db_name"] for r in rows]

    def replicate(self, source: str, target: str, doc_filter: DocFilter | None = None) -> dict:
        with get_conn() as conn:
            found = fetch_one(
                conn,
                "select 1 as found from app_databases where db_name=%s",
                [source],
                query_name="app_databases.exists",
            )
            if not found:
                raise DocumentNotFound("Database does not exist", source)
            rows = fetch_all(
                conn,
                "select doc_id, rev, data from app_documents where db_name=%s",
                [source],
                query_name="app_documents.replicate_source",
            )
            docs = [_doc(r) for r in rows]
            if doc_filter is not None:
                docs = [d for d in docs if doc_filter(d)]
            _ensure_db(conn, target)
            target_rows = fetch_all(
                conn,
                "select doc_id, rev from app_documents where db_name=%s for update",
                [target],
                query_name="app_documents.replicate_target",
            )
            target_revs = {r["doc_id"]: r["rev"] for r in target_rows}
            docs = [d for d in docs if replaces_target(d, target_revs.get(d["_id"]))]
            written = _upsert_rows(conn, target, docs)
        return {"ok": True, "docs_written": written}
