"""SQLite-backed concept store with an FTS5 index over designation labels.

The store is populated once from line-delimited CodeSystem exports (first
record is the CodeSystem descriptor, every further record one concept) or
from whole CodeSystem JSON resources, then queried read-only.
"""
from __future__ import annotations

import gzip
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    bindparam,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .schemas import CodeSystemMeta, Concept

logger = logging.getLogger(__name__)

Base = declarative_base()

_DEFAULT_BATCH_SIZE = 10_000


class SearchBackendError(Exception):
    """Raised when the full-text index or the concept tables cannot be queried."""


class IngestError(Exception):
    pass


class CodeSystemRow(Base):
    """One loaded vocabulary."""

    __tablename__ = "code_systems"

    id = Column(Integer, primary_key=True)
    system = Column(String, nullable=False, unique=True)
    version = Column(String)
    name = Column(String)
    title = Column(String)
    date = Column(String)
    concept_count = Column(Integer, nullable=False, default=0)
    source = Column(String)
    loaded_at = Column(DateTime, nullable=False, default=datetime.now)


class ConceptRow(Base):
    __tablename__ = "concepts"
    __table_args__ = (
        UniqueConstraint("system", "code", name="uq_concepts_system_code"),
        Index("idx_concepts_system", "system"),
    )

    id = Column(Integer, primary_key=True)
    system = Column(String, nullable=False)
    code = Column(String, nullable=False)
    display = Column(String, nullable=False, default="")


class DesignationRow(Base):
    __tablename__ = "designations"

    id = Column(Integer, primary_key=True)
    concept_id = Column(Integer, ForeignKey("concepts.id"), nullable=False, index=True)
    label = Column(String, nullable=False)
    use_code = Column(String)


# External-content FTS5 table kept in sync with `designations` by triggers.
_FTS_DDL = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS designations_fts USING fts5(
        label,
        content='designations',
        content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS designations_ai AFTER INSERT ON designations BEGIN
        INSERT INTO designations_fts(rowid, label) VALUES (new.id, new.label);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS designations_ad AFTER DELETE ON designations BEGIN
        INSERT INTO designations_fts(designations_fts, rowid, label) VALUES ('delete', old.id, old.label);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS designations_au AFTER UPDATE ON designations BEGIN
        INSERT INTO designations_fts(designations_fts, rowid, label) VALUES ('delete', old.id, old.label);
        INSERT INTO designations_fts(rowid, label) VALUES (new.id, new.label);
    END
    """,
]

_MATCH_SQL = """
    SELECT c.system AS system, c.code AS code, c.display AS display, MIN(m.rank) AS rank
    FROM (
        SELECT rowid AS designation_id, rank
        FROM designations_fts
        WHERE designations_fts MATCH :expr
    ) AS m
    JOIN designations d ON d.id = m.designation_id
    JOIN concepts c ON c.id = d.concept_id
    {where}
    GROUP BY c.id
    ORDER BY rank ASC, c.id ASC
    LIMIT :limit
"""


def _engine_for(path: str) -> Engine:
    if path in ("", ":memory:"):
        # One shared connection, otherwise every checkout sees an empty database.
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(f"sqlite:///{path}")

    @event.listens_for(engine, "connect")
    def _pragmas(dbapi_conn, _record):  # pragma: no cover - driver hook
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA temp_store=MEMORY")
        cur.close()

    return engine


def _open_text(path: str) -> Iterator[str]:
    opener = gzip.open if path.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8") as f:  # type: ignore[operator]
        for line in f:
            yield line


class ConceptStore:
    """Concept/designation tables plus a label-keyed full-text index."""

    def __init__(self, engine: Engine, batch_size: int = _DEFAULT_BATCH_SIZE):
        self.engine = engine
        self.batch_size = batch_size
        # Lazily filled by supported_systems(); cleared by invalidate_systems_cache().
        self._systems_cache: Optional[List[str]] = None

    # ------------------------ Open / Create ------------------------
    @classmethod
    def create(cls, path: str = ":memory:", fresh: bool = False, **kwargs) -> "ConceptStore":
        if fresh and path not in ("", ":memory:") and os.path.exists(path):
            logger.info("Removing existing database: %s", path)
            os.remove(path)
        if path not in ("", ":memory:"):
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)
        store = cls(_engine_for(path), **kwargs)
        store.create_schema()
        return store

    @classmethod
    def open(cls, path: str, **kwargs) -> "ConceptStore":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Terminology database not found: {path}")
        return cls(_engine_for(path), **kwargs)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            for ddl in _FTS_DDL:
                conn.execute(text(ddl))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------ Supported systems cache ------------------------
    def supported_systems(self) -> List[str]:
        if self._systems_cache is not None:
            return self._systems_cache
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text("SELECT system FROM code_systems ORDER BY id")).all()
                systems = [r.system for r in rows]
                if not systems:
                    rows = conn.execute(text("SELECT DISTINCT system FROM concepts ORDER BY system")).all()
                    systems = [r.system for r in rows]
        except SQLAlchemyError as e:
            logger.warning("Could not list supported systems: %s", e)
            systems = []
        self._systems_cache = systems
        return systems

    def invalidate_systems_cache(self) -> None:
        self._systems_cache = None

    # ------------------------ Ingestion ------------------------
    def ingest_ndjson(self, path: str) -> int:
        logger.info("Loading: %s", path)
        return self.ingest_lines(_open_text(path), source=path)

    def ingest_lines(self, lines: Iterable[str], source: Optional[str] = None) -> int:
        """Ingest a descriptor line followed by one concept per line; returns the concept count."""
        it = iter(lines)
        header: Optional[Dict[str, Any]] = None
        for line in it:
            if line.strip():
                try:
                    header = json.loads(line)
                except json.JSONDecodeError as e:
                    raise IngestError(f"Invalid CodeSystem descriptor in {source or '<lines>'}: {e}") from e
                break
        if header is None:
            raise IngestError(f"Empty corpus: {source or '<lines>'}")
        system = header.get("url")
        if not system:
            raise IngestError(f"No system URL in: {source or '<lines>'}")
        logger.info("System: %s (version: %s)", system, header.get("version") or "unknown")

        processed = 0
        skipped = 0
        batch: List[Dict[str, Any]] = []
        for line in it:
            if not line.strip():
                continue
            try:
                concept = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(concept, dict) or not concept.get("code"):
                skipped += 1
                continue
            batch.append(concept)
            if len(batch) >= self.batch_size:
                processed += self._write_batch(system, batch)
                batch = []
                logger.debug("Processed %d concepts...", processed)
        if batch:
            processed += self._write_batch(system, batch)

        if skipped:
            logger.warning("Skipped %d invalid concept lines in %s", skipped, source or system)
        self._record_code_system(
            CodeSystemMeta(
                system=system,
                version=header.get("version"),
                name=header.get("name"),
                title=header.get("title"),
                concept_count=processed,
                source=source,
            ),
            date=header.get("date"),
        )
        logger.info("Loaded %d concepts from %s", processed, system)
        return processed

    def ingest_code_system(self, resource: Dict[str, Any], source: Optional[str] = None) -> int:
        """Ingest a complete CodeSystem resource, flattening nested concept hierarchies."""
        if resource.get("resourceType") not in (None, "CodeSystem"):
            raise IngestError(f"Not a CodeSystem resource: {resource.get('resourceType')}")
        system = resource.get("url")
        if not system:
            raise IngestError(f"No system URL in: {source or '<resource>'}")

        flat: List[Dict[str, Any]] = []
        stack = list(reversed(resource.get("concept") or []))
        while stack:
            node = stack.pop()
            if not isinstance(node, dict):
                continue
            if node.get("code"):
                flat.append(node)
            stack.extend(reversed(node.get("concept") or []))

        processed = 0
        for start in range(0, len(flat), self.batch_size):
            processed += self._write_batch(system, flat[start:start + self.batch_size])
        self._record_code_system(
            CodeSystemMeta(
                system=system,
                version=resource.get("version"),
                name=resource.get("name"),
                title=resource.get("title"),
                concept_count=processed,
                source=source,
            ),
            date=resource.get("date"),
        )
        return processed

    def ingest_code_system_json(self, path: str) -> int:
        with open(path, encoding="utf-8") as f:
            resource = json.load(f)
        return self.ingest_code_system(resource, source=path)

    def _write_batch(self, system: str, concepts: Sequence[Dict[str, Any]]) -> int:
        written = 0
        concept_table = ConceptRow.__table__
        designation_table = DesignationRow.__table__
        with self.engine.begin() as conn:
            for concept in concepts:
                code = str(concept["code"])
                display = str(concept.get("display") or "")
                stmt = sqlite_insert(concept_table).values(system=system, code=code, display=display)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["system", "code"], set_={"display": display}
                )
                conn.execute(stmt)
                concept_id = conn.execute(
                    text("SELECT id FROM concepts WHERE system = :system AND code = :code"),
                    {"system": system, "code": code},
                ).scalar_one()
                # Re-ingesting a concept replaces its labels
                conn.execute(designation_table.delete().where(designation_table.c.concept_id == concept_id))

                labels: List[Dict[str, Any]] = []
                if display:
                    labels.append({"concept_id": concept_id, "label": display, "use_code": None})
                for designation in concept.get("designation") or []:
                    value = designation.get("value") if isinstance(designation, dict) else None
                    if not value or value == display:
                        continue
                    use = designation.get("use") or {}
                    labels.append({"concept_id": concept_id, "label": value, "use_code": use.get("code")})
                if labels:
                    conn.execute(designation_table.insert(), labels)
                written += 1
        self.invalidate_systems_cache()
        return written

    def _record_code_system(self, meta: CodeSystemMeta, date: Optional[str] = None) -> None:
        with self.engine.begin() as conn:
            actual = conn.execute(
                text("SELECT COUNT(*) FROM concepts WHERE system = :system"), {"system": meta.system}
            ).scalar_one()
            values = {
                "system": meta.system,
                "version": meta.version,
                "name": meta.name,
                "title": meta.title,
                "date": date,
                "concept_count": actual,
                "source": meta.source,
                "loaded_at": datetime.now(),
            }
            stmt = sqlite_insert(CodeSystemRow.__table__).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["system"], set_={k: v for k, v in values.items() if k != "system"}
            )
            conn.execute(stmt)
        self.invalidate_systems_cache()

    def finalize(self) -> None:
        """Rebuild and optimize the FTS index, then refresh planner statistics."""
        with self.engine.begin() as conn:
            conn.execute(text("INSERT INTO designations_fts(designations_fts) VALUES('rebuild')"))
            conn.execute(text("INSERT INTO designations_fts(designations_fts) VALUES('optimize')"))
            conn.execute(text("ANALYZE"))
        self.invalidate_systems_cache()

    # ------------------------ Query ------------------------
    def match_designations(
        self,
        fts_expr: str,
        systems: Optional[Sequence[str]] = None,
        limit: int = 20,
    ) -> List[Tuple[str, str, str, float]]:
        params: Dict[str, Any] = {"expr": fts_expr, "limit": int(limit)}
        if systems:
            params["systems"] = list(systems)
            stmt = text(_MATCH_SQL.format(where="WHERE c.system IN :systems")).bindparams(
                bindparam("systems", expanding=True)
            )
        else:
            stmt = text(_MATCH_SQL.format(where=""))
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt, params).all()
        except SQLAlchemyError as e:
            raise SearchBackendError(f"Full-text query failed: {e}") from e
        return [(r.system, str(r.code), str(r.display or ""), float(r.rank)) for r in rows]

    def get_concept(self, system: str, code: str) -> Optional[Concept]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT system, code, display FROM concepts WHERE system = :system AND code = :code LIMIT 1"),
                    {"system": system, "code": str(code)},
                ).first()
        except SQLAlchemyError as e:
            raise SearchBackendError(f"Concept lookup failed: {e}") from e
        if row is None:
            return None
        return Concept(system=row.system, code=str(row.code), display=str(row.display or ""))

    def system_size(self, system: str) -> int:
        try:
            with self.engine.connect() as conn:
                return int(
                    conn.execute(
                        text("SELECT COUNT(*) FROM concepts WHERE system = :system"), {"system": system}
                    ).scalar_one()
                )
        except SQLAlchemyError as e:
            raise SearchBackendError(f"Count failed for {system}: {e}") from e

    def concepts_for_system(self, system: str, limit: Optional[int] = None) -> List[Concept]:
        sql = "SELECT system, code, display FROM concepts WHERE system = :system ORDER BY id"
        params: Dict[str, Any] = {"system": system}
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(sql), params).all()
        except SQLAlchemyError as e:
            raise SearchBackendError(f"Listing failed for {system}: {e}") from e
        return [Concept(system=r.system, code=str(r.code), display=str(r.display or "")) for r in rows]

    def system_counts(self) -> List[Tuple[str, int]]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT system, COUNT(*) AS cnt FROM concepts GROUP BY system ORDER BY MIN(id)")
                ).all()
        except SQLAlchemyError as e:
            raise SearchBackendError(f"Per-system counts failed: {e}") from e
        return [(r.system, int(r.cnt or 0)) for r in rows]

    def list_code_systems(self) -> List[CodeSystemMeta]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT system, version, name, title, concept_count, source "
                    "FROM code_systems ORDER BY concept_count DESC"
                )
            ).all()
        return [
            CodeSystemMeta(
                system=r.system,
                version=r.version,
                name=r.name,
                title=r.title,
                concept_count=int(r.concept_count or 0),
                source=r.source,
            )
            for r in rows
        ]

    def totals(self) -> Dict[str, int]:
        with self.engine.connect() as conn:
            return {
                "code_systems": int(conn.execute(text("SELECT COUNT(*) FROM code_systems")).scalar_one()),
                "concepts": int(conn.execute(text("SELECT COUNT(*) FROM concepts")).scalar_one()),
                "designations": int(conn.execute(text("SELECT COUNT(*) FROM designations")).scalar_one()),
            }
