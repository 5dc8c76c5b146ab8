"""
Parley - LanceDB Vector Table Base
===================================
Shared plumbing for the two tenant-scoped vector tables
(``KnowledgeStore`` and ``PreferenceStore``):

  • Opening or creating a table with a strict PyArrow schema whose
    ``vector`` column is a fixed-size ``float32`` list of width ``D``.
  • Exact cosine nearest-neighbour search with a **pre-filter** so the
    tenant predicate is applied before ``LIMIT``.
  • Filtered scans for listing and id lookups.
  • A per-table write lock so read-modify-write cycles (update, delete)
    and appends never interleave.

Filter safety
-------------
LanceDB takes SQL predicates as strings.  Predicates are only ever built
from column names defined here, enum values checked by the caller, and
``sql_literal``-quoted user values, so no caller input is spliced raw.

Design decisions:
  • **Dependency Injection** — the connection is opened by
    ``connect_database`` and passed in; nothing here is a module global.
  • **Blocking I/O** — every method is synchronous; the async stores run
    them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa

from parley.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
Row = dict[str, Any]

VECTOR_COLUMN = "vector"
DISTANCE_COLUMN = "_distance"


def connect_database(db_path: str | Path) -> lancedb.DBConnection:
    """Open a LanceDB connection, creating the directory if needed."""
    path = Path(db_path)
    path.mkdir(parents=True, exist_ok=True)
    logger.info("Opening LanceDB connection: %s", path)
    return lancedb.connect(str(path))


def vector_field(dimensions: int) -> pa.Field:
    """Nullable fixed-width embedding column."""
    return pa.field(VECTOR_COLUMN, pa.list_(pa.float32(), dimensions), nullable=True)


def sql_literal(value: str) -> str:
    """Quote *value* as a SQL string literal (single quotes doubled)."""
    if not isinstance(value, str):
        raise TypeError(f"Expected str for filter value, got {type(value).__name__}")
    return "'" + value.replace("'", "''") + "'"


def equals(column: str, value: str) -> str:
    return f"{column} = {sql_literal(value)}"


def all_of(*clauses: str) -> str:
    return " AND ".join(f"({c})" for c in clauses)


def similarity_from_distance(distance: float) -> float:
    """Cosine similarity from LanceDB's cosine distance (1.0 = identical)."""
    return 1.0 - float(distance)


class LanceVectorTable:
    """
    One LanceDB table with a fixed schema and a fixed-width vector column.

    Parameters
    ----------
    db
        An open ``lancedb.DBConnection`` (see ``connect_database``).
    table_name
        Name of the table to open or create.
    schema
        PyArrow schema; must contain a ``vector`` fixed-size list field.
    """

    __slots__ = ("db", "table_name", "schema", "dimensions", "table", "_write_lock")

    def __init__(self, db: lancedb.DBConnection, table_name: str, schema: pa.Schema) -> None:
        self.db = db
        self.table_name: str = table_name
        self.schema: pa.Schema = schema
        self.dimensions: int = schema.field(VECTOR_COLUMN).type.list_size
        self.table: lancedb.table.Table | None = None
        self._write_lock = threading.Lock()
        self._connect()


    def _connect(self) -> None:
        """Open the table if present (checking its vector width), else create it."""
        try:
            table = self.db.open_table(self.table_name)
        except (ValueError, FileNotFoundError):
            self.table = self.db.create_table(self.table_name, schema=self.schema)
            logger.info("Created new table '%s'.", self.table_name)
            return

        stored = table.schema.field(VECTOR_COLUMN).type.list_size
        if stored != self.dimensions:
            raise ValueError(f"Table '{self.table_name}' stores {stored}-d vectors, expected {self.dimensions}-d.")
        self.table = table
        logger.info("Opened existing table '%s' (%d rows).", self.table_name, self.table.count_rows())


    def _require_table(self) -> lancedb.table.Table:
        if self.table is None:
            raise RuntimeError(f"Table '{self.table_name}' is not initialised.")
        return self.table


    def _columns(self, include_vector: bool = False) -> list[str]:
        return [name for name in self.schema.names if include_vector or name != VECTOR_COLUMN]

    # ── Reads ──────────────────────────────────────────────────────────

    def _select_rows(self, where: str, include_vector: bool = False) -> list[Row]:
        """Return every row matching *where* (unordered)."""
        table = self._require_table()
        matched = table.count_rows(where)
        if matched == 0:
            return []
        return table.search().where(where).select(self._columns(include_vector)).limit(matched).to_list()


    def _get_row(self, where: str, include_vector: bool = False) -> Row | None:
        rows = self._select_rows(where, include_vector=include_vector)
        return rows[0] if rows else None


    def _nearest(self, query_vector: list[float], where: str, limit: int) -> list[Row]:
        """
        Exact cosine nearest neighbours among rows matching *where*.

        Rows without an embedding are excluded.  Results are ordered by
        ascending distance, ties by ascending id.
        """
        if len(query_vector) != self.dimensions:
            raise ValueError(f"Query vector has {len(query_vector)} dimensions, expected {self.dimensions}.")

        table = self._require_table()
        predicate = all_of(where, f"{VECTOR_COLUMN} IS NOT NULL")
        if limit < 1 or table.count_rows(predicate) == 0:
            return []

        rows = (
            table.search(query_vector, vector_column_name=VECTOR_COLUMN)
            .distance_type("cosine")
            .where(predicate, prefilter=True)
            .select([*self._columns(), DISTANCE_COLUMN])
            .limit(limit)
            .to_list()
        )
        rows.sort(key=lambda r: (float(r[DISTANCE_COLUMN]), r["id"]))
        return rows

    # ── Writes ─────────────────────────────────────────────────────────

    def _append(self, record: Row) -> None:
        with self._write_lock:
            self._require_table().add([record])


    def _replace_locked(self, record: Row) -> None:
        """Overwrite the row with ``record["id"]`` in one commit; caller holds the write lock."""
        self._require_table().merge_insert("id").when_matched_update_all().execute([record])


    def _delete_where(self, where: str) -> None:
        with self._write_lock:
            self._require_table().delete(where)

    # ── Maintenance ────────────────────────────────────────────────────

    def count(self) -> int:
        """Return the total number of rows in the table."""
        if self.table is None:
            return 0
        return self.table.count_rows()


    def drop_table(self) -> None:
        """Drop the table (useful for tests and re-imports)."""
        try:
            self.db.drop_table(self.table_name)
            self.table = None
            logger.info("Dropped table '%s'.", self.table_name)
        except (ValueError, FileNotFoundError):
            logger.warning("Table '%s' does not exist — nothing to drop.", self.table_name)


    def __repr__(self) -> str:
        return f"{type(self).__name__}(table='{self.table_name}', rows={self.count()})"
