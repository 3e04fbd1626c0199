"""
Flask web application for the nonclustered index sizing calculator.

Exposes a ``/api/estimate`` endpoint that takes already-resolved table
layout facts and delegates to ``nci_sizing.estimate_index_size``.
"""

from __future__ import annotations

import sys
from dataclasses import asdict
from pathlib import Path

# Allow importing nci_sizing from the parent directory.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from flask import Flask, jsonify, request

import nci_sizing as ns

app = Flask(__name__)


def _column_from_json(data: dict) -> ns.ColumnFact:
    return ns.ColumnFact(
        max_length_bytes=int(data["max_length_bytes"]),
        is_nullable=bool(data.get("is_nullable", False)),
        is_variable_length=bool(data.get("is_variable_length", False)),
        name=str(data.get("name", "")),
        type_name=str(data.get("type_name", "")),
    )


def _clustering_key_from_json(data: dict | None) -> ns.ClusteringKeyFact | None:
    if data is None:
        return None
    return ns.ClusteringKeyFact(
        is_unique=bool(data["is_unique"]),
        key_column_count=int(data["key_column_count"]),
        summed_max_length_bytes=int(data["summed_max_length_bytes"]),
        has_nullable_column=bool(data.get("has_nullable_column", False)),
        variable_length_column_count=int(
            data.get("variable_length_column_count", 0)
        ),
    )


@app.route("/api/estimate", methods=["POST"])
def estimate():
    """Run the sizing algorithm and return the result as JSON."""
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "request body must be a JSON object"}), 400

    try:
        fill_factor = data.get("fill_factor")
        inp = ns.EstimationInput(
            columns=[_column_from_json(c) for c in data["columns"]],
            clustering_key=_clustering_key_from_json(data.get("clustering_key")),
            row_count=int(data["row_count"]),
            engine_tier=ns.EngineVersionTier(
                data.get("engine_tier", ns.EngineVersionTier.CURRENT.value)
            ),
            fill_factor=None if fill_factor is None else int(fill_factor),
        )
    except KeyError as exc:
        return jsonify({"error": f"missing field: {exc.args[0]}"}), 400
    except (ValueError, TypeError) as exc:
        return jsonify({"error": str(exc)}), 400

    try:
        result = ns.estimate_index_size(inp)
    except ns.EstimationError as exc:
        return jsonify({"error": str(exc)}), 400

    payload = asdict(result)
    payload["trace"] = list(result.trace)
    payload["summary"] = result.summary
    return jsonify(payload)


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5050)
