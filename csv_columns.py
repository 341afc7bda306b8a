"""CSV column alias configuration loader."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


class CsvColumnConfigError(ValueError):
    """Raised when ``csv_columns.json`` contains invalid data."""


@dataclass(frozen=True)
class CsvColumn:
    """A canonical CSV field and the header spellings that address it."""

    field: str
    aliases: Tuple[str, ...]
    required: bool = False


def normalize_header(header: str) -> str:
    """Case- and whitespace-insensitive form of a CSV header."""

    return re.sub(r"\s+", " ", str(header or "")).strip().casefold()


class CsvColumnRegistry:
    """Load canonical CSV fields and their header aliases from ``csv_columns.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "csv_columns.json"
        self._columns: List[CsvColumn] = []
        self._by_alias: Dict[str, str] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload column definitions from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"CSV column file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise CsvColumnConfigError("CSV column file must contain a JSON list")

        columns: List[CsvColumn] = []
        by_alias: Dict[str, str] = {}
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise CsvColumnConfigError(f"Entry #{idx} must be a JSON object")
            field = str(entry.get("field", "")).strip()
            if not field:
                raise CsvColumnConfigError(f"Entry #{idx} is missing a non-empty 'field'")
            aliases = entry.get("aliases")
            if not isinstance(aliases, list) or not aliases:
                raise CsvColumnConfigError(f"Entry {field} must list at least one alias")

            for alias in aliases:
                key = normalize_header(alias)
                owner = by_alias.get(key)
                if owner is not None and owner != field:
                    raise CsvColumnConfigError(
                        f"Alias {alias!r} is claimed by both {owner} and {field}"
                    )
                by_alias[key] = field
            columns.append(
                CsvColumn(field, tuple(str(alias) for alias in aliases), bool(entry.get("required", False)))
            )

        if len({column.field for column in columns}) != len(columns):
            raise CsvColumnConfigError("CSV column file defines a field twice")

        self._columns = columns
        self._by_alias = by_alias

    # ------------------------------------------------------------------
    @property
    def columns(self) -> List[CsvColumn]:
        return list(self._columns)

    def required_fields(self) -> Tuple[str, ...]:
        return tuple(column.field for column in self._columns if column.required)

    def field_for(self, header: str) -> Optional[str]:
        """Return the canonical field addressed by ``header`` or ``None``."""

        return self._by_alias.get(normalize_header(header))

    def canonicalize(self, row: Mapping[str, object]) -> Dict[str, str]:
        """Map a CSV row keyed by human headers onto canonical field names.

        Unknown headers are dropped; the first non-blank value wins when two
        aliases of the same field are present.
        """

        result: Dict[str, str] = {}
        for header, value in row.items():
            field = self.field_for(header)
            if field is None or value is None:
                continue
            text = str(value).strip()
            if not text or result.get(field):
                continue
            result[field] = text
        return result

    def looks_like_csv_row(self, headers: Iterable[str]) -> bool:
        """True when any header is a human-readable CSV alias (contains a space or symbol)."""

        for header in headers:
            if self.field_for(header) and not re.fullmatch(r"[A-Za-z_]+", str(header)):
                return True
        return False


CSV_COLUMNS = CsvColumnRegistry()
"""Singleton registry used by the CSV extractor."""
