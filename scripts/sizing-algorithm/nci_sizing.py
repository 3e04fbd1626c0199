"""
SQL Server Nonclustered Index Sizing Algorithm
==============================================

Estimates the leaf-level size of a nonclustered index before it is built,
using only catalog metadata and a row count.  Nothing is scanned: the
estimate reproduces the storage engine's leaf-row layout and page packing.

1. **Leaf row layout** - key columns, row locator (heap RID or clustering
   key plus uniquifier), null bitmap, variable-length overhead and the row
   header byte.
2. **Page packing** - rows per 8 KB page (8096 usable bytes, 2-byte slot
   per row), optionally reduced by a fill factor.
3. **Size** - leaf pages x 8192 bytes, reported in bytes and megabytes.

Input Parameters
----------------
- **columns** (tuple of ColumnFact) - One entry per index key column.
- **clustering_key** (ClusteringKeyFact or None) - Shape of the clustered
  index key.  ``None`` means the table is a heap.
- **row_count** (int) - Number of rows in the table.  Min: 1.
- **engine_tier** (EngineVersionTier) - ``PRE_2012`` or ``CURRENT``.
  SQL Server 2012 and later always write a null bitmap.
- **fill_factor** (int or None) - Percentage of each leaf page to fill.
  Min: 1, Max: 100.  ``None`` is the same as 100.

Intermediate (non-leaf) levels, compression and partitioning are not
modelled.

References
----------
- Estimate the Size of a Nonclustered Index:
  https://learn.microsoft.com/sql/relational-databases/databases/estimate-the-size-of-a-nonclustered-index
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EstimationError(ValueError):
    """Base class for every error raised by the estimator."""


class InvalidInputError(EstimationError):
    """An input quantity is out of range (row count, fill factor, widths)."""


class RowTooLargeError(EstimationError):
    """The index row cannot fit even once on a data page."""


class FillFactorTooLowError(EstimationError):
    """The fill factor leaves no usable rows on a leaf page."""


# ---------------------------------------------------------------------------
# Enums & constants
# ---------------------------------------------------------------------------

class EngineVersionTier(Enum):
    """Storage-engine generation, as far as leaf-row layout is concerned.

    * ``PRE_2012`` - the null bitmap is only written when at least one
      leaf column is nullable.
    * ``CURRENT``  - SQL Server 2012 (major version 11) and later; the
      null bitmap is always written.
    """
    PRE_2012 = "pre2012"
    CURRENT = "current"

    @classmethod
    def from_product_version(cls, version: str) -> EngineVersionTier:
        """Map a ``SERVERPROPERTY('ProductVersion')`` string to a tier.

        Only the major version (the text before the first dot) matters:
        ``"11.0.2100.60"`` and later are ``CURRENT``.
        """
        major_text = str(version).strip().split(".", 1)[0]
        try:
            major = int(major_text)
        except ValueError:
            raise InvalidInputError(
                f"unrecognised engine product version {version!r}"
            ) from None
        if major >= CURRENT_TIER_MIN_MAJOR_VERSION:
            return cls.CURRENT
        return cls.PRE_2012


# First major version whose leaf rows always carry a null bitmap (2012).
CURRENT_TIER_MIN_MAJOR_VERSION = 11

# Usable bytes on a data page (8192 minus the 96-byte page header).
PAGE_USABLE_BYTES = 8_096

# Physical size of a data page.
PAGE_SIZE_BYTES = 8_192

# Each row costs one slot-array entry at the end of the page.
SLOT_ARRAY_ENTRY_BYTES = 2

# Row identifier used as the row locator on a heap.
HEAP_RID_BYTES = 8

# Hidden uniquifier added to rows of a non-unique clustered index.
UNIQUIFIER_BYTES = 4

# Null bitmap: a 2-byte column count followed by one bit per leaf column.
NULL_BITMAP_HEADER_BYTES = 2

# Variable-length block: a 2-byte count plus a 2-byte offset per column.
VARIABLE_COUNT_BYTES = 2
VARIABLE_OFFSET_BYTES = 2

# Status byte at the start of every index record.
ROW_HEADER_BYTES = 1

# Fill factor bounds.
MIN_FILL_FACTOR = 1
MAX_FILL_FACTOR = 100

MIN_ROW_COUNT = 1

BYTES_PER_MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Input facts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnFact:
    """One index key column as resolved from the catalog.

    Parameters
    ----------
    max_length_bytes : int
        Declared maximum storage width in bytes (``sys.columns.max_length``).
    is_nullable : bool
        Whether the column allows NULL.
    is_variable_length : bool
        Whether the storage type is in the variable-length family
        (text, ntext, image, varbinary, varchar, nvarchar).
    name, type_name : str
        Display only; they never affect the arithmetic.
    """
    max_length_bytes: int
    is_nullable: bool = False
    is_variable_length: bool = False
    name: str = ""
    type_name: str = ""

    def __post_init__(self) -> None:
        if self.max_length_bytes < 0:
            raise InvalidInputError(
                f"max_length_bytes of column {self.name or '<unnamed>'} "
                f"must be non-negative, got {self.max_length_bytes}"
            )


@dataclass(frozen=True)
class ClusteringKeyFact:
    """Shape of the clustered index key embedded in every leaf row."""
    is_unique: bool
    key_column_count: int
    summed_max_length_bytes: int
    has_nullable_column: bool = False
    variable_length_column_count: int = 0

    def __post_init__(self) -> None:
        if self.key_column_count < 0:
            raise InvalidInputError(
                f"key_column_count must be non-negative, "
                f"got {self.key_column_count}"
            )
        if self.summed_max_length_bytes < 0:
            raise InvalidInputError(
                f"summed_max_length_bytes must be non-negative, "
                f"got {self.summed_max_length_bytes}"
            )
        if not 0 <= self.variable_length_column_count <= self.key_column_count:
            raise InvalidInputError(
                f"variable_length_column_count must be between 0 and "
                f"key_column_count ({self.key_column_count}), "
                f"got {self.variable_length_column_count}"
            )


@dataclass(frozen=True)
class TableLayoutFacts:
    """Everything the metadata resolver learns about the target table."""
    columns: tuple[ColumnFact, ...]
    clustering_key: ClusteringKeyFact | None
    row_count: int
    engine_tier: EngineVersionTier
    table_name: str = ""


@dataclass(frozen=True)
class EstimationInput:
    """Validated input to :func:`estimate_index_size`.

    Validation happens on construction, so an invalid row count or fill
    factor is rejected before any layout arithmetic runs.
    """
    columns: tuple[ColumnFact, ...]
    clustering_key: ClusteringKeyFact | None
    row_count: int
    engine_tier: EngineVersionTier = EngineVersionTier.CURRENT
    fill_factor: int | None = None

    def __post_init__(self) -> None:
        # Accept any sequence but keep the record immutable.
        object.__setattr__(self, "columns", tuple(self.columns))
        if not self.columns:
            raise InvalidInputError("at least one index key column is required")
        if self.row_count < MIN_ROW_COUNT:
            raise InvalidInputError(
                f"row_count must be at least {MIN_ROW_COUNT}, "
                f"got {self.row_count}"
            )
        if self.fill_factor is not None and not (
            MIN_FILL_FACTOR <= self.fill_factor <= MAX_FILL_FACTOR
        ):
            raise InvalidInputError(
                f"fill_factor must be between {MIN_FILL_FACTOR} and "
                f"{MAX_FILL_FACTOR}, got {self.fill_factor}"
            )

    @classmethod
    def from_facts(
        cls,
        facts: TableLayoutFacts,
        row_count: int | None = None,
        fill_factor: int | None = None,
    ) -> EstimationInput:
        """Build an input from resolved facts.

        *row_count*, when given, replaces the row count in *facts*.
        """
        return cls(
            columns=facts.columns,
            clustering_key=facts.clustering_key,
            row_count=facts.row_count if row_count is None else row_count,
            engine_tier=facts.engine_tier,
            fill_factor=fill_factor,
        )


# ---------------------------------------------------------------------------
# Output / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SizeEstimate:
    """Leaf-level size estimate with its derivation trace."""
    key_length_bytes: int
    leaf_columns: int
    variable_columns: int
    row_locator_length_bytes: int
    null_bitmap_bytes: int
    variable_overhead_bytes: int
    index_row_size_bytes: int
    leaf_rows_per_page: int
    free_rows_per_page: int
    leaf_pages_required: int
    estimated_size_bytes: int
    estimated_size_mb: int
    trace: tuple[str, ...] = field(default=(), repr=False)

    @property
    def summary(self) -> str:
        return "\n".join(self.trace)


# ---------------------------------------------------------------------------
# Core algorithm
# ---------------------------------------------------------------------------

def _null_bitmap_bytes(leaf_columns: int) -> int:
    """Size of the null bitmap for *leaf_columns* columns.

    Two header bytes plus one bit per column, rounded up to whole bytes::

        2 + (leaf_columns + 7) // 8
    """
    return NULL_BITMAP_HEADER_BYTES + (leaf_columns + 7) // 8


def _variable_overhead_bytes(variable_columns: int) -> int:
    """Bytes needed to locate variable-length data within the row."""
    if variable_columns <= 0:
        return 0
    return VARIABLE_COUNT_BYTES + variable_columns * VARIABLE_OFFSET_BYTES


def _rows_per_page(index_row_size: int) -> int:
    """Rows of *index_row_size* bytes that fit on one page.

    Raises
    ------
    RowTooLargeError
        If not even one row fits.
    """
    rows = PAGE_USABLE_BYTES // (index_row_size + SLOT_ARRAY_ENTRY_BYTES)
    if rows < 1:
        raise RowTooLargeError(
            f"index row of {index_row_size} bytes "
            f"(+{SLOT_ARRAY_ENTRY_BYTES} byte slot) does not fit on a "
            f"{PAGE_USABLE_BYTES}-byte page"
        )
    return rows


def _free_rows_per_page(index_row_size: int, fill_factor: int) -> int:
    """Rows deliberately left empty on each page by *fill_factor*.

    Formula::

        8096 * (100 - fill_factor) / 100 / (row_size + 2)

    floored.  Nested floor division of positive integers gives the same
    result as flooring the exact quotient.
    """
    free_bytes = PAGE_USABLE_BYTES * (MAX_FILL_FACTOR - fill_factor) // 100
    return free_bytes // (index_row_size + SLOT_ARRAY_ENTRY_BYTES)


def _leaf_pages(
    row_count: int,
    rows_per_page: int,
    index_row_size: int,
    fill_factor: int | None,
) -> tuple[int, int]:
    """Return ``(free_rows_per_page, leaf_pages_required)``.

    Raises
    ------
    FillFactorTooLowError
        If the fill factor leaves no room for a single row per page.
    """
    if fill_factor is None:
        return 0, math.ceil(row_count / rows_per_page)

    free_rows = _free_rows_per_page(index_row_size, fill_factor)
    usable_rows = rows_per_page - free_rows
    if usable_rows <= 0:
        raise FillFactorTooLowError(
            f"fill_factor {fill_factor} leaves {usable_rows} usable rows per "
            f"page ({rows_per_page} rows per page, {free_rows} kept free) "
            f"for a {index_row_size}-byte index row"
        )
    return free_rows, math.ceil(row_count / usable_rows)


def _bytes_to_mb(size_bytes: int) -> int:
    """Convert bytes to whole megabytes.

    Uses Python's ``round`` (half to even): 0.5 MB -> 0, 1.5 MB -> 2,
    2.5 MB -> 2.
    """
    return round(size_bytes / BYTES_PER_MB)


def estimate_index_size(inp: EstimationInput) -> SizeEstimate:
    """Run the full nonclustered leaf-level sizing algorithm.

    Steps
    -----
    1. **Key length** - sum the key column widths.
    2. **Row locator** - heap RID, or clustering key (+ uniquifier when the
       clustered index is not unique).
    3. **Null bitmap** - always on ``CURRENT`` engines, otherwise only when
       a leaf column is nullable.
    4. **Variable-length overhead** - count plus one offset per column.
    5. **Index row size** - sum of the above plus the row header.
    6. **Rows per page** - 8096 usable bytes, 2-byte slot per row.
    7. **Leaf pages** - with the fill factor's free rows taken out.
    8. **Size** - pages x 8192 bytes.

    Parameters
    ----------
    inp : EstimationInput
        Resolved, validated facts about the index and its table.

    Returns
    -------
    SizeEstimate
        Byte/row breakdown, page count, size and derivation trace.

    Raises
    ------
    RowTooLargeError
        If the index row does not fit on a page.
    FillFactorTooLowError
        If the fill factor leaves no usable rows per page.
    """
    trace: list[str] = []

    # --- Step 1: Key columns ---
    key_length = sum(col.max_length_bytes for col in inp.columns)
    leaf_columns = len(inp.columns)
    variable_columns = sum(1 for col in inp.columns if col.is_variable_length)
    has_null_key_column = any(col.is_nullable for col in inp.columns)
    trace.append(f"Key length: {key_length} bytes")

    # --- Step 2: Row locator ---
    ck = inp.clustering_key
    if ck is None:
        row_locator = HEAP_RID_BYTES
        trace.append(f"Row locator length: {row_locator} bytes (heap RID)")
    else:
        leaf_columns += ck.key_column_count
        if ck.is_unique:
            row_locator = ck.summed_max_length_bytes
            trace.append(
                f"Row locator length: {row_locator} bytes "
                f"(unique clustered index)"
            )
        else:
            row_locator = ck.summed_max_length_bytes + UNIQUIFIER_BYTES
            # The uniquifier is stored as a variable-length column.
            variable_columns += 1
            trace.append(
                f"Row locator length: {row_locator} bytes "
                f"(non-unique clustered index, "
                f"+{UNIQUIFIER_BYTES} byte uniquifier)"
            )
        variable_columns += ck.variable_length_column_count
        has_null_key_column = has_null_key_column or ck.has_nullable_column
    trace.append(f"Leaf columns: {leaf_columns}")

    # --- Step 3: Null bitmap ---
    if inp.engine_tier is EngineVersionTier.PRE_2012 and has_null_key_column:
        trace.append("Leaf record contains null columns")
    if inp.engine_tier is EngineVersionTier.CURRENT or has_null_key_column:
        null_bitmap = _null_bitmap_bytes(leaf_columns)
    else:
        null_bitmap = 0
    trace.append(f"Null bitmap: {null_bitmap} bytes")

    # --- Step 4: Variable-length overhead ---
    variable_overhead = _variable_overhead_bytes(variable_columns)
    trace.append(f"Variable-length columns: {variable_columns}")
    trace.append(f"Variable-length overhead: {variable_overhead} bytes")

    # --- Step 5: Index row size ---
    index_row_size = (
        key_length + row_locator + null_bitmap + variable_overhead
        + ROW_HEADER_BYTES
    )
    trace.append(f"Index row size: {index_row_size} bytes")

    # --- Step 6: Page packing ---
    rows_per_page = _rows_per_page(index_row_size)
    trace.append(f"Leaf rows per page: {rows_per_page}")

    # --- Step 7: Leaf pages ---
    free_rows, leaf_pages = _leaf_pages(
        inp.row_count, rows_per_page, index_row_size, inp.fill_factor,
    )
    if inp.fill_factor is not None:
        trace.append(f"Fill factor: {inp.fill_factor}%")
        trace.append(f"Free rows per page: {free_rows}")
    trace.append(f"Row count: {inp.row_count:,}")
    trace.append(f"Leaf pages required: {leaf_pages:,}")

    # --- Step 8: Size ---
    size_bytes = leaf_pages * PAGE_SIZE_BYTES
    size_mb = _bytes_to_mb(size_bytes)
    trace.append(f"Estimated nonclustered index size: {size_mb:,} MB")

    logger.debug(
        "index row %d bytes, %d rows/page, %d free rows/page, %d leaf pages",
        index_row_size, rows_per_page, free_rows, leaf_pages,
    )

    return SizeEstimate(
        key_length_bytes=key_length,
        leaf_columns=leaf_columns,
        variable_columns=variable_columns,
        row_locator_length_bytes=row_locator,
        null_bitmap_bytes=null_bitmap,
        variable_overhead_bytes=variable_overhead,
        index_row_size_bytes=index_row_size,
        leaf_rows_per_page=rows_per_page,
        free_rows_per_page=free_rows,
        leaf_pages_required=leaf_pages,
        estimated_size_bytes=size_bytes,
        estimated_size_mb=size_mb,
        trace=tuple(trace),
    )


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------

def estimate_from_facts(
    facts: TableLayoutFacts,
    row_count: int | None = None,
    fill_factor: int | None = None,
) -> SizeEstimate:
    """Quick helper: estimate straight from resolver output."""
    return estimate_index_size(
        EstimationInput.from_facts(facts, row_count, fill_factor)
    )
