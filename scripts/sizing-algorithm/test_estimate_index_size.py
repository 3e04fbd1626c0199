"""Tests for the estimate_index_size command-line front end."""

from __future__ import annotations

import contextlib
import io
import unittest
from unittest import mock

import estimate_index_size as cli
import metadata_resolver as mr
import nci_sizing as ns


FACTS = ns.TableLayoutFacts(
    columns=(
        ns.ColumnFact(4, name="CustomerID", type_name="int"),
        ns.ColumnFact(4, is_variable_length=True, name="Code", type_name="varchar"),
    ),
    clustering_key=ns.ClusteringKeyFact(
        is_unique=True, key_column_count=1, summed_max_length_bytes=4,
    ),
    row_count=100_000,
    engine_tier=ns.EngineVersionTier.CURRENT,
    table_name="Sales.dbo.Orders",
)

BASE_ARGS = [
    "--instance", "SQL01", "--database", "Sales",
    "--table", "Orders", "--columns", "CustomerID, Code",
]


def _run(argv):
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = cli.main(argv)
    return code, out.getvalue(), err.getvalue()


class TestArgumentParsing(unittest.TestCase):

    def test_defaults(self) -> None:
        args = cli.build_parser().parse_args(BASE_ARGS)
        self.assertEqual(args.schema, mr.DEFAULT_SCHEMA)
        self.assertEqual(args.columns, ["CustomerID", "Code"])
        self.assertIsNone(args.row_count)
        self.assertIsNone(args.fill_factor)

    def test_invalid_fill_factor_is_usage_error(self) -> None:
        for value in ("0", "101", "ten"):
            with contextlib.redirect_stderr(io.StringIO()):
                with self.assertRaises(SystemExit) as ctx:
                    cli.build_parser().parse_args(BASE_ARGS + ["--fill-factor", value])
            self.assertEqual(ctx.exception.code, 2)

    def test_invalid_row_count_is_usage_error(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                cli.build_parser().parse_args(BASE_ARGS + ["--row-count", "0"])
        self.assertEqual(ctx.exception.code, 2)

    def test_empty_column_list_is_usage_error(self) -> None:
        argv = BASE_ARGS[:-1] + [" , "]
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.build_parser().parse_args(argv)


@mock.patch.object(cli, "MetadataResolver")
class TestMain(unittest.TestCase):

    def test_prints_trace_and_size(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.return_value = FACTS
        code, out, err = _run(BASE_ARGS)
        self.assertEqual(code, 0)
        self.assertEqual(err, "")
        self.assertIn("Nonclustered index on Sales.dbo.Orders", out)
        self.assertIn("Key columns: CustomerID, Code", out)
        self.assertIn("Index row size: 20 bytes", out)
        self.assertTrue(
            out.rstrip().endswith("Estimated nonclustered index size: 2 MB")
        )
        resolver_cls.return_value.resolve.assert_called_once_with(
            "Sales", "dbo", "Orders", ["CustomerID", "Code"], row_count=None,
        )

    def test_row_count_and_fill_factor_passed_through(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.return_value = FACTS
        code, out, _ = _run(
            BASE_ARGS + ["--row-count", "5000", "--fill-factor", "80"],
        )
        self.assertEqual(code, 0)
        _, kwargs = resolver_cls.return_value.resolve.call_args
        self.assertEqual(kwargs["row_count"], 5000)
        self.assertIn("Fill factor: 80%", out)

    def test_connection_url_built_from_arguments(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.return_value = FACTS
        _run(BASE_ARGS + ["--driver", "ODBC Driver 18 for SQL Server"])
        (url,), _ = resolver_cls.call_args
        self.assertEqual(url.host, "SQL01")
        self.assertEqual(url.database, "Sales")
        self.assertEqual(url.query["driver"], "ODBC Driver 18 for SQL Server")

    def test_resolver_error_reported(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.side_effect = mr.ObjectNotFoundError(
            "table dbo.Orders does not exist"
        )
        code, out, err = _run(BASE_ARGS)
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("error: table dbo.Orders does not exist", err)

    def test_estimation_error_reported(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.return_value = ns.TableLayoutFacts(
            columns=(ns.ColumnFact(8100, name="Blob"),),
            clustering_key=None,
            row_count=10,
            engine_tier=ns.EngineVersionTier.CURRENT,
        )
        code, _, err = _run(BASE_ARGS)
        self.assertEqual(code, 1)
        self.assertIn("does not fit", err)

    def test_empty_table_reported(self, resolver_cls) -> None:
        resolver_cls.return_value.resolve.return_value = ns.TableLayoutFacts(
            columns=FACTS.columns,
            clustering_key=None,
            row_count=0,
            engine_tier=ns.EngineVersionTier.CURRENT,
        )
        code, _, err = _run(BASE_ARGS)
        self.assertEqual(code, 1)
        self.assertIn("row_count", err)


if __name__ == "__main__":
    unittest.main()
