"""In-memory per-app document store with revisions and replication."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

from trellis.doc_ids import APP_METADATA_ID
from trellis.revisions import next_rev, rev_number


Doc = Dict[str, Any]
DocFilter = Callable[[Doc], bool]

logger = logging.getLogger("trellis.doc_store")


@dataclass
class DocumentStoreError(Exception):
    message: str
    doc_id: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (doc_id={self.doc_id})" if self.doc_id else self.message


@dataclass
class DocumentNotFound(DocumentStoreError):
    status: int = 404


@dataclass
class DocumentConflict(DocumentStoreError):
    status: int = 409


def _check_write(existing: Doc | None, doc: Doc, force: bool) -> None:
    if force:
        return
    rev = doc.get("_rev")
    if existing is None:
        if rev:
            raise DocumentConflict("Document update conflict", doc.get("_id"))
        return
    if rev != existing.get("_rev"):
        raise DocumentConflict("Document update conflict", doc.get("_id"))


def _in_range(doc_id: str, startkey: str | None, endkey: str | None) -> bool:
    if startkey is not None and doc_id < startkey:
        return False
    if endkey is not None and doc_id > endkey:
        return False
    return True


def parse_dump(dump: str | bytes) -> list[Doc]:
    """Read a newline-delimited replication dump into plain documents.

    Each line is a JSON object; lines carrying a ``docs`` list contribute
    documents, other lines (dump headers, sequence markers) are skipped.
    """
    if isinstance(dump, (bytes, bytearray)):
        dump = dump.decode("utf-8")
    docs: list[Doc] = []
    for line in dump.splitlines():
        line = line.strip()
        if not line:
            continue
        entry = json.loads(line)
        if isinstance(entry, dict) and isinstance(entry.get("docs"), list):
            docs.extend(d for d in entry["docs"] if isinstance(d, dict) and d.get("_id"))
    return docs


def _row(doc: Doc, include_docs: bool) -> dict:
    row = {"id": doc["_id"], "key": doc["_id"], "value": {"rev": doc.get("_rev")}}
    if include_docs:
        row["doc"] = copy.deepcopy(doc)
    return row


class AppDatabase:
    """One document namespace inside a :class:`DocumentStore`."""

    def __init__(self, store: "DocumentStore", name: str, skip_setup: bool = False) -> None:
        self._store = store
        self.name = name
        self._skip_setup = skip_setup

    def _docs(self) -> Dict[str, Doc]:
        return self._store._databases.setdefault(self.name, {})

    def _read(self) -> Dict[str, Doc]:
        docs = self._store._databases.get(self.name)
        if docs is None:
            if self._skip_setup:
                raise DocumentNotFound("Database does not exist", self.name)
            return {}
        return docs

    def exists(self) -> bool:
        return self._store.exists(self.name)

    def get(self, doc_id: str) -> Doc:
        docs = self._read()
        doc = docs.get(doc_id)
        if doc is None:
            raise DocumentNotFound("missing", doc_id)
        return copy.deepcopy(doc)

    def put(self, doc: Doc, force: bool = False) -> dict:
        docs = self._docs()
        record = copy.deepcopy(doc)
        record.setdefault("_id", uuid.uuid4().hex)
        existing = docs.get(record["_id"])
        _check_write(existing, record, force)
        record["_rev"] = next_rev(existing.get("_rev") if existing else record.get("_rev"), record)
        docs[record["_id"]] = record
        return {"ok": True, "id": record["_id"], "rev": record["_rev"]}

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
        docs = self._read()
        if keys is not None:
            rows = [_row(docs[k], include_docs) for k in keys if k in docs]
        else:
            rows = [
                _row(docs[doc_id], include_docs)
                for doc_id in sorted(docs)
                if _in_range(doc_id, startkey, endkey)
            ]
        return {"total_rows": len(docs), "rows": rows}

    def remove(self, doc_id: str, rev: str | None) -> dict:
        docs = self._read()
        existing = docs.get(doc_id)
        if existing is None:
            raise DocumentNotFound("missing", doc_id)
        if rev != existing.get("_rev"):
            raise DocumentConflict("Document update conflict", doc_id)
        del docs[doc_id]
        return {"ok": True, "id": doc_id, "rev": next_rev(rev, {"_deleted": True})}

    def destroy(self) -> dict:
        self._store._databases.pop(self.name, None)
        logger.info("db_destroyed name=%s", self.name)
        return {"ok": True}

    def load(self, dump: str | bytes) -> dict:
        """Import a replication dump, keeping the revisions it carries."""
        docs = self._docs()
        loaded = parse_dump(dump)
        for doc in loaded:
            record = copy.deepcopy(doc)
            if not record.get("_rev"):
                record["_rev"] = next_rev(None, record)
            docs[record["_id"]] = record
        return {"ok": True, "docs_written": len(loaded)}


class DocumentStore:
    def __init__(self) -> None:
        self._databases: Dict[str, Dict[str, Doc]] = {}

    def db(self, name: str, skip_setup: bool = False) -> AppDatabase:
        return AppDatabase(self, name, skip_setup=skip_setup)

    def exists(self, name: str) -> bool:
        return name in self._databases

    def list_databases(self, prefix: str | None = None) -> list[str]:
        names = sorted(self._databases)
        if prefix:
            names = [n for n in names if n.startswith(prefix)]
        return names

    def replicate(self, source: str, target: str, doc_filter: DocFilter | None = None) -> dict:
        if source not in self._databases:
            raise DocumentNotFound("Database does not exist", source)
        target_docs = self._databases.setdefault(target, {})
        written = 0
        for doc_id, doc in self._databases[source].items():
            if doc_filter is not None and not doc_filter(doc):
                continue
            current = target_docs.get(doc_id)
            if not replaces_target(doc, current.get("_rev") if current else None):
                continue
            target_docs[doc_id] = copy.deepcopy(doc)
            written += 1
        return {"ok": True, "docs_written": written}


class Replication:
    """Replication handle; callers must ``close`` it on every path."""

    def __init__(self, store: Any, source: str, target: str) -> None:
        self._store = store
        self.source = source
        self.target = target
        self.closed = False

    @staticmethod
    def app_replicate_opts() -> dict:
        # app metadata stays per environment
        return {"filter": lambda doc: doc.get("_id") != APP_METADATA_ID}

    def replicate(self, opts: dict | None = None) -> dict:
        if self.closed:
            raise DocumentStoreError("Replication already closed", self.target)
        doc_filter = (opts or {}).get("filter")
        result = self._store.replicate(self.source, self.target, doc_filter)
        logger.info(
            "replication_complete source=%s target=%s docs_written=%s",
            self.source,
            self.target,
            result.get("docs_written"),
        )
        return result

    def close(self) -> None:
        self.closed = True


def replaces_target(doc: Doc, target_rev: str | None) -> bool:
    """A replicated document only lands when the target lacks it or holds an older revision."""
    if target_rev is None:
        return True
    return rev_number(doc.get("_rev")) > rev_number(target_rev)


def docs_from_rows(result: dict) -> List[Doc]:
    return [row["doc"] for row in (result or {}).get("rows", []) if row.get("doc")]
