#!/usr/bin/env python3
"""Estimate the size of a nonclustered index on a SQL Server table.

Usage::

    python3 estimate_index_size.py --instance SQL01 --database Sales \\
        --table Orders --columns CustomerID,OrderDate --fill-factor 90
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from metadata_resolver import (
    DEFAULT_SCHEMA,
    MetadataResolver,
    ResolverError,
    build_connection_url,
)
from nci_sizing import (
    MAX_FILL_FACTOR,
    MIN_FILL_FACTOR,
    EstimationError,
    estimate_from_facts,
)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def _fill_factor(value: str) -> int:
    number = int(value)
    if not MIN_FILL_FACTOR <= number <= MAX_FILL_FACTOR:
        raise argparse.ArgumentTypeError(
            f"must be between {MIN_FILL_FACTOR} and {MAX_FILL_FACTOR}, got {value}"
        )
    return number


def _column_list(value: str) -> list[str]:
    columns = [c.strip() for c in value.split(",") if c.strip()]
    if not columns:
        raise argparse.ArgumentTypeError("at least one column is required")
    return columns


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Estimate the leaf-level size of a nonclustered index "
                    "from catalog metadata.",
    )
    parser.add_argument("--instance", required=True,
                        help="SQL Server instance (host or host\\instance)")
    parser.add_argument("--database", required=True, help="Database name")
    parser.add_argument("--schema", default=DEFAULT_SCHEMA,
                        help=f"Schema name (default: {DEFAULT_SCHEMA})")
    parser.add_argument("--table", required=True, help="Table name")
    parser.add_argument("--columns", required=True, type=_column_list,
                        help="Comma-separated index key columns")
    parser.add_argument("--row-count", type=_positive_int, default=None,
                        help="Use this row count instead of counting the table")
    parser.add_argument("--fill-factor", type=_fill_factor, default=None,
                        help="Index fill factor percentage (1-100)")
    parser.add_argument("--driver", default=None,
                        help="ODBC driver name (default: $NCI_SIZING_ODBC_DRIVER "
                             "or 'ODBC Driver 17 for SQL Server')")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = "DEBUG" if args.verbose else os.environ.get("NCI_SIZING_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    url = build_connection_url(args.instance, args.database, args.driver)
    try:
        facts = MetadataResolver(url).resolve(
            args.database, args.schema, args.table, args.columns,
            row_count=args.row_count,
        )
        estimate = estimate_from_facts(facts, fill_factor=args.fill_factor)
    except (ResolverError, EstimationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    print("=" * 60)
    print(f"  Nonclustered index on {facts.table_name}")
    print(f"  Key columns: {', '.join(c.name for c in facts.columns)}")
    print("=" * 60)
    print()
    print(estimate.summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
