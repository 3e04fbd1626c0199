"""
SQL Server metadata resolver for the nonclustered index sizing algorithm.

Looks up everything ``nci_sizing`` needs about a table - key column widths,
nullability and storage family, the clustered index shape, the engine
version and the row count - and returns it as a ``TableLayoutFacts``.

All catalog lookups are parameterised ``sys.*`` queries.  The only statement
that embeds identifiers is the ``COUNT_BIG(*)`` row count, and those are
bracket-quoted by :func:`quote_identifier`.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from nci_sizing import (
    ClusteringKeyFact,
    ColumnFact,
    EngineVersionTier,
    TableLayoutFacts,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_ODBC_DRIVER = os.environ.get(
    "NCI_SIZING_ODBC_DRIVER", "ODBC Driver 17 for SQL Server"
)
DEFAULT_SCHEMA = "dbo"
DEFAULT_CONNECT_TIMEOUT = 15

# Storage types whose data lives in the variable-length part of the row.
VARIABLE_LENGTH_TYPES = frozenset({
    "text", "ntext", "image", "varbinary", "varchar", "nvarchar",
})

# sys.columns.max_length reports -1 for (max) types; at most 8000 bytes of
# such a value can be stored in-row.
MAX_TYPE_LENGTH_BYTES = 8_000

CLUSTERED_INDEX_TYPE = 1


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ResolverError(Exception):
    """Base class for metadata resolution failures."""


class ResolverConnectionError(ResolverError):
    """The server could not be reached or a catalog query failed."""


class ObjectNotFoundError(ResolverError):
    """The database, schema, table or a requested column does not exist."""


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

_DATABASE_STATE_SQL = text(
    "SELECT state_desc FROM sys.databases WHERE name = :database"
)

_PRODUCT_VERSION_SQL = text(
    "SELECT CAST(SERVERPROPERTY('ProductVersion') AS nvarchar(128))"
)

_SCHEMA_SQL = text(
    "SELECT schema_id FROM sys.schemas WHERE name = :schema"
)

_TABLE_SQL = text(
    "SELECT t.object_id FROM sys.tables AS t "
    "JOIN sys.schemas AS s ON s.schema_id = t.schema_id "
    "WHERE s.name = :schema AND t.name = :table"
)

_COLUMNS_SQL = text(
    "SELECT c.name AS column_name, ty.name AS type_name, "
    "c.max_length, c.is_nullable "
    "FROM sys.columns AS c "
    "JOIN sys.types AS ty ON ty.user_type_id = c.user_type_id "
    "WHERE c.object_id = :object_id"
)

_CLUSTERING_KEY_SQL = text(
    "SELECT i.is_unique, c.name AS column_name, ty.name AS type_name, "
    "c.max_length, c.is_nullable "
    "FROM sys.indexes AS i "
    "JOIN sys.index_columns AS ic "
    "  ON ic.object_id = i.object_id AND ic.index_id = i.index_id "
    "JOIN sys.columns AS c "
    "  ON c.object_id = ic.object_id AND c.column_id = ic.column_id "
    "JOIN sys.types AS ty ON ty.user_type_id = c.user_type_id "
    "WHERE i.object_id = :object_id AND i.type = :index_type "
    "AND ic.key_ordinal > 0 "
    "ORDER BY ic.key_ordinal"
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_variable_length_type(type_name: str) -> bool:
    """Return True if *type_name* belongs to the variable-length family."""
    return type_name.strip().lower() in VARIABLE_LENGTH_TYPES


def quote_identifier(name: str) -> str:
    """Bracket-quote a SQL Server identifier, escaping ``]``."""
    return "[" + name.replace("]", "]]") + "]"


def build_connection_url(
    instance: str,
    database: str,
    driver: str | None = None,
) -> URL:
    """Build an ``mssql+pyodbc`` URL using Windows (trusted) authentication."""
    return URL.create(
        "mssql+pyodbc",
        host=instance,
        database=database,
        query={
            "driver": driver or DEFAULT_ODBC_DRIVER,
            "trusted_connection": "yes",
        },
    )


def _column_width(row: Mapping[str, Any]) -> int:
    width = int(row["max_length"])
    if width < 0:
        logger.warning(
            "column %s is %s(max); counting %d in-row bytes",
            row["column_name"], row["type_name"], MAX_TYPE_LENGTH_BYTES,
        )
        return MAX_TYPE_LENGTH_BYTES
    return width


def build_column_facts(
    rows: Iterable[Mapping[str, Any]],
    requested: Sequence[str],
) -> tuple[ColumnFact, ...]:
    """Turn ``sys.columns`` rows into facts for the *requested* columns.

    Facts come back in the requested order; names are matched
    case-insensitively, as with the default SQL Server collation, and
    duplicates in *requested* are collapsed.

    Raises
    ------
    ObjectNotFoundError
        If any requested column is missing from *rows*.
    """
    by_name = {str(row["column_name"]).lower(): row for row in rows}

    ordered: list[str] = []
    seen: set[str] = set()
    for name in requested:
        if name.lower() not in seen:
            seen.add(name.lower())
            ordered.append(name)

    missing = [name for name in ordered if name.lower() not in by_name]
    if missing:
        raise ObjectNotFoundError(
            f"column(s) not found: {', '.join(missing)}"
        )

    facts = []
    for name in ordered:
        row = by_name[name.lower()]
        facts.append(ColumnFact(
            max_length_bytes=_column_width(row),
            is_nullable=bool(row["is_nullable"]),
            is_variable_length=is_variable_length_type(row["type_name"]),
            name=str(row["column_name"]),
            type_name=str(row["type_name"]),
        ))
    return tuple(facts)


def build_clustering_key(
    rows: Iterable[Mapping[str, Any]],
) -> ClusteringKeyFact | None:
    """Summarise the clustered index key columns, or None for a heap."""
    rows = list(rows)
    if not rows:
        return None
    return ClusteringKeyFact(
        is_unique=bool(rows[0]["is_unique"]),
        key_column_count=len(rows),
        summed_max_length_bytes=sum(_column_width(r) for r in rows),
        has_nullable_column=any(bool(r["is_nullable"]) for r in rows),
        variable_length_column_count=sum(
            1 for r in rows if is_variable_length_type(r["type_name"])
        ),
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class MetadataResolver:
    """Resolve ``TableLayoutFacts`` from a live SQL Server instance.

    Parameters
    ----------
    url : str or sqlalchemy.engine.URL
        Connection URL for the server.  Ignored when *engine* is given.
    engine : sqlalchemy.engine.Engine, optional
        An already-configured engine.
    """

    def __init__(self, url: str | URL | None = None, engine: Engine | None = None):
        if engine is None:
            if url is None:
                raise ValueError("either url or engine is required")
            engine = create_engine(
                url, connect_args={"timeout": DEFAULT_CONNECT_TIMEOUT},
            )
        self.engine = engine

    def resolve(
        self,
        database: str,
        schema: str,
        table: str,
        columns: Sequence[str],
        row_count: int | None = None,
    ) -> TableLayoutFacts:
        """Collect layout facts for an index on *columns* of *table*.

        When *row_count* is given the table is not counted.

        Raises
        ------
        ObjectNotFoundError
            If the database is missing or offline, or the schema, table or
            any column does not exist.
        ResolverConnectionError
            If the server cannot be reached or a query fails.
        """
        qualified = f"{database}.{schema}.{table}"
        logger.info("resolving index layout for %s (%s)", qualified, ", ".join(columns))
        try:
            with self.engine.connect() as conn:
                self._check_database(conn, database)
                object_id = self._table_object_id(conn, schema, table)
                column_rows = conn.execute(
                    _COLUMNS_SQL, {"object_id": object_id},
                ).mappings().all()
                column_facts = build_column_facts(column_rows, columns)

                ck_rows = conn.execute(
                    _CLUSTERING_KEY_SQL,
                    {"object_id": object_id, "index_type": CLUSTERED_INDEX_TYPE},
                ).mappings().all()
                clustering_key = build_clustering_key(ck_rows)
                if clustering_key is None:
                    logger.info("%s is a heap", qualified)
                else:
                    logger.debug("clustering key of %s: %s", qualified, clustering_key)

                version = conn.execute(_PRODUCT_VERSION_SQL).scalar_one()
                engine_tier = EngineVersionTier.from_product_version(version)
                logger.debug("product version %s -> %s", version, engine_tier.value)

                if row_count is None:
                    row_count = self._count_rows(conn, database, schema, table)
                    logger.info("%s has %d rows", qualified, row_count)
        except SQLAlchemyError as exc:
            raise ResolverConnectionError(
                f"metadata lookup for {qualified} failed: {exc}"
            ) from exc

        return TableLayoutFacts(
            columns=column_facts,
            clustering_key=clustering_key,
            row_count=row_count,
            engine_tier=engine_tier,
            table_name=qualified,
        )

    def _check_database(self, conn: Connection, database: str) -> None:
        state = conn.execute(
            _DATABASE_STATE_SQL, {"database": database},
        ).scalar_one_or_none()
        if state is None:
            raise ObjectNotFoundError(f"database {database} does not exist")
        if str(state).upper() != "ONLINE":
            raise ObjectNotFoundError(
                f"database {database} is not online (state: {state})"
            )
        # Catalog views below are scoped to the current database.
        conn.exec_driver_sql(f"USE {quote_identifier(database)}")

    def _table_object_id(self, conn: Connection, schema: str, table: str) -> int:
        if conn.execute(_SCHEMA_SQL, {"schema": schema}).scalar_one_or_none() is None:
            raise ObjectNotFoundError(f"schema {schema} does not exist")
        object_id = conn.execute(
            _TABLE_SQL, {"schema": schema, "table": table},
        ).scalar_one_or_none()
        if object_id is None:
            raise ObjectNotFoundError(f"table {schema}.{table} does not exist")
        return int(object_id)

    def _count_rows(
        self, conn: Connection, database: str, schema: str, table: str,
    ) -> int:
        name = ".".join(quote_identifier(p) for p in (database, schema, table))
        return int(conn.execute(text(f"SELECT COUNT_BIG(*) FROM {name}")).scalar_one())
