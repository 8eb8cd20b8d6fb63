"""Read-only table catalog used to check DB-bound cells."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from gridtpl.io.fileops import read_text_safe

DEFAULT_CATALOG_NAME = "gridtpl-tables.yaml"


class _CatalogModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class TableColumnConfig(_CatalogModel):
    column_name: str
    data_type: str | None = None
    selectable: str = "Y"
    filterable: str = "N"
    agg_funcs: str = ""  # comma separated, e.g. "SUM,AVG"


class TableConfig(_CatalogModel):
    table_name: str
    columns: list[TableColumnConfig] = Field(default_factory=list)


class TableCatalog:
    """Lookup over table configurations. Unknown tables and columns yield empty results."""

    def __init__(self, tables: list[TableConfig] | None = None) -> None:
        self.tables = list(tables or [])
        self._by_name = {t.table_name: t for t in self.tables}

    @classmethod
    def from_data(cls, data: Any) -> "TableCatalog":
        if isinstance(data, dict):
            data = data.get("tables", [])
        return cls([TableConfig.model_validate(t) for t in data or []])

    @classmethod
    def load(cls, path: str | Path) -> "TableCatalog":
        """Load from YAML (JSON is valid YAML)."""
        return cls.from_data(yaml.safe_load(read_text_safe(path)))

    @classmethod
    def load_from_dir(cls, directory: str | Path) -> "TableCatalog | None":
        path = Path(directory) / DEFAULT_CATALOG_NAME
        if path.exists():
            return cls.load(path)
        return None

    def get_table(self, table: str) -> TableConfig | None:
        return self._by_name.get(table)

    def _column(self, table: str, column: str) -> TableColumnConfig | None:
        config = self._by_name.get(table)
        if config is None:
            return None
        for col in config.columns:
            if col.column_name == column:
                return col
        return None

    def get_selectable_columns(self, table: str) -> list[str]:
        config = self._by_name.get(table)
        if config is None:
            return []
        return [c.column_name for c in config.columns if c.selectable == "Y"]

    def get_filterable_columns(self, table: str) -> list[str]:
        config = self._by_name.get(table)
        if config is None:
            return []
        return [c.column_name for c in config.columns if c.filterable == "Y"]

    def get_allowed_aggregate_functions(self, table: str, column: str) -> list[str]:
        col = self._column(table, column)
        if col is None or not col.agg_funcs:
            return []
        return [f.strip() for f in col.agg_funcs.split(",") if f.strip()]

    def get_column_data_type(self, table: str, column: str) -> str | None:
        col = self._column(table, column)
        return col.data_type if col is not None and col.data_type else None

    def allows_cell_type(self, cell_type: str, table: str | None, column: str | None) -> bool:
        """Whether a DB cell kind may bind to ``table.column``.

        DB_VALUE and unbound cells are always allowed; aggregates must be
        listed in the column's aggregate functions.
        """
        if not table or not column:
            return True
        if not cell_type.startswith("DB_") or cell_type == "DB_VALUE":
            return True
        return cell_type[len("DB_"):] in self.get_allowed_aggregate_functions(table, column)
