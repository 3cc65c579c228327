from __future__ import annotations

import csv
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import click
from flask import Flask

from fulfillsync.contexts.catalog.application.batch_upsert import BATCH_DEFINITIONS
from fulfillsync.db import get_db


def load_items(path: Path) -> List[Dict[str, Any]]:
    """Read a JSON array of objects, or a CSV file whose header names the columns."""
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8-sig") as handle:
            return [{key: (value if value != "" else None) for key, value in row.items()} for row in csv.DictReader(handle)]

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint="PATH") from exc
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise click.BadParameter("expected a JSON array of objects", param_hint="PATH")
    return data


def register_batch_cli(app: Flask) -> None:
    @app.cli.group("batch")
    def batch_group() -> None:
        """Bulk imports through the batch upsert engine."""

    @batch_group.command("import")
    @click.argument("entity_type", type=click.Choice(sorted(BATCH_DEFINITIONS)))
    @click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
    @click.option("--client-id", required=True, help="Tenant that owns the imported rows.")
    @click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Override the chunk size.")
    def batch_import(entity_type: str, path: Path, client_id: str, batch_size: int | None) -> None:
        from fulfillsync.engine import get_engine

        items = load_items(path)
        result = get_engine(app).batch.upsert(
            get_db(), BATCH_DEFINITIONS[entity_type], client_id, items, batch_size=batch_size
        )
        summary = result.to_dict()
        summary["total"] = result.total
        click.echo(json.dumps(summary, ensure_ascii=True, sort_keys=True))
        if not result.success:
            sys.exit(1)
