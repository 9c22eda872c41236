"""
Input sources for snapshot runs.

A source is anything that yields plain dict rows carrying the natural key,
the tracked attributes and the updated_at timestamp. Timestamps may stay as
ISO strings here; the normalizer coerces them.
"""

import csv
import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


def read_json_batch(path) -> List[Dict[str, Any]]:
    """
    Read a JSON batch file.

    Accepts either {"changes": [...], "batch_metadata": {...}} or a bare list
    of row objects.
    """
    path = Path(path)
    with open(path, 'r') as f:
        data = json.load(f)

    if isinstance(data, dict):
        rows = data.get('changes', [])
    else:
        rows = data

    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise ValueError(f"{path}: expected a list of row objects")

    logger.debug(f"Read {len(rows)} rows from {path}")
    return rows


def read_csv(path, delimiter: str = ',') -> List[Dict[str, Any]]:
    """Read a CSV file with a header row. Empty cells become None."""
    path = Path(path)
    with open(path, 'r', newline='', encoding='utf-8') as f:
        rows = [
            {column: (value if value != '' else None) for column, value in row.items()}
            for row in csv.DictReader(f, delimiter=delimiter)
        ]
    logger.debug(f"Read {len(rows)} rows from {path}")
    return rows


class PostgresQuerySource:
    """
    Rows from a query against a PostgreSQL database.

    Either pass a full query (str or psycopg2.sql.Composable) with params, or
    use from_table() to select every column of a table.
    """

    def __init__(self, connection, query, params: Optional[Sequence[Any]] = None):
        self.connection = connection
        self.query = query
        self.params = params

    @classmethod
    def from_table(cls, connection, table: str, columns: Optional[Sequence[str]] = None) -> "PostgresQuerySource":
        """Select columns (default all) from a possibly schema-qualified table."""
        if columns:
            select_list = sql.SQL(', ').join(sql.Identifier(c) for c in columns)
        else:
            select_list = sql.SQL('*')
        query = sql.SQL("SELECT {} FROM {}").format(
            select_list, sql.Identifier(*table.split('.'))
        )
        return cls(connection, query)

    def fetch(self) -> List[Dict[str, Any]]:
        return list(self)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        try:
            with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(self.query, self.params)
                for row in cursor:
                    yield dict(row)
        except psycopg2.Error as e:
            logger.error(f"Failed to read source rows: {e}")
            raise
