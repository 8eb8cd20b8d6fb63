"""Template entity models: columns, rows, cells, variants and the persisted document."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel

RowType = Literal["HEADER", "DATA", "SEPARATOR", "DYNAMIC", "FOOTER"]
Align = Literal["left", "center", "right"]
DbCellType = Literal["DB_VALUE", "DB_COUNT", "DB_SUM", "DB_AVG", "DB_MIN", "DB_MAX"]

ROW_TYPES: tuple[str, ...] = ("HEADER", "DATA", "SEPARATOR", "DYNAMIC", "FOOTER")
DB_CELL_TYPES: tuple[str, ...] = ("DB_VALUE", "DB_COUNT", "DB_SUM", "DB_AVG", "DB_MIN", "DB_MAX")
CELL_TYPES: tuple[str, ...] = ("TEXT", "FORMULA", *DB_CELL_TYPES)


class TemplateModel(BaseModel):
    """Base for all template entities: immutable, camelCase on the wire."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------
class ValueFormatting(TemplateModel):
    type: Literal["none", "currency", "number", "date", "percentage"] = "none"
    currency_symbol: str | None = None
    decimals: int | None = None
    thousand_separator: bool | None = None
    output_format: str | None = None


class CellFormat(ValueFormatting):
    bg_color: str | None = None


class ColumnFormat(TemplateModel):
    width: int | None = None
    relative_width: float | None = None
    align: Align | None = None
    value_formatting: ValueFormatting | None = None
    bold_condition: str | None = None


class Column(TemplateModel):
    id: str = ""
    name: str = ""
    format: ColumnFormat = Field(default_factory=ColumnFormat)


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------
class CellRender(TemplateModel):
    """Render hints. Spans are always integers >= 1."""

    bold: bool | None = None
    align: Align | None = None
    colspan: int = 1
    rowspan: int = 1

    @field_validator("colspan", "rowspan", mode="before")
    @classmethod
    def _coerce_span(cls, v: Any) -> int:
        if v is None:
            return 1
        try:
            span = int(v)
        except (TypeError, ValueError):
            return 1
        return max(span, 1)

    @property
    def is_merged(self) -> bool:
        return self.colspan > 1 or self.rowspan > 1


class FilterCondition(TemplateModel):
    op: str = "="
    value: Any = None


class CellSource(TemplateModel):
    table: str | None = None
    column: str | None = None
    filters: dict[str, list[FilterCondition]] | None = None


class _CellBase(TemplateModel):
    id: str | None = None
    render: CellRender = Field(default_factory=CellRender)
    format: CellFormat | None = None


class TextCell(_CellBase):
    type: Literal["TEXT"] = "TEXT"
    value: str = ""


class FormulaCell(_CellBase):
    type: Literal["FORMULA"] = "FORMULA"
    expression: str = ""
    variables: dict[str, str] = Field(default_factory=dict)


class DbCell(_CellBase):
    type: DbCellType = "DB_VALUE"
    source: CellSource = Field(default_factory=CellSource)


Cell = Annotated[Union[TextCell, FormulaCell, DbCell], Field(discriminator="type")]
CELL_ADAPTER: TypeAdapter[Any] = TypeAdapter(Cell)


def parse_cell(data: Any) -> TextCell | FormulaCell | DbCell:
    """Validate a raw cell payload into its tagged variant. Missing type means TEXT."""
    if isinstance(data, _CellBase):
        return data
    payload = dict(data or {})
    payload.setdefault("type", "TEXT")
    return CELL_ADAPTER.validate_python(payload)


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------
class ColumnMapping(TemplateModel):
    template_column_id: str
    db_column: str


class DynamicConfig(TemplateModel):
    source_type: str = Field(
        default="DB_LIST",
        validation_alias=AliasChoices("sourceType", "source_type", "type"),
    )
    table: str = ""
    selected_columns: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selectedColumns", "selected_columns", "select"),
    )
    filters: dict[str, list[FilterCondition]] = Field(default_factory=dict)
    column_mappings: list[ColumnMapping] = Field(default_factory=list)
    order_by: str | None = Field(
        default=None,
        validation_alias=AliasChoices("orderBy", "order_by", "orderby"),
    )
    limit: int | None = None


class Row(TemplateModel):
    id: str
    row_type: RowType = "DATA"
    cell_ids: tuple[str, ...] = ()
    dynamic_config: DynamicConfig | None = None
    height: int | None = None

    @property
    def is_dynamic(self) -> bool:
        return self.row_type == "DYNAMIC"


# ---------------------------------------------------------------------------
# Metadata and variants
# ---------------------------------------------------------------------------
class TemplateMeta(TemplateModel):
    template_id: str = ""
    version: int = 1
    page_size: str = "A4"
    page_orientation: str = "portrait"
    description: str | None = None


class ExtraField(TemplateModel):
    name: str
    value: str = ""


class ReportMeta(TemplateModel):
    report_name: str = ""
    report_id: str = ""
    extras: list[ExtraField] = Field(default_factory=list)


class Param(TemplateModel):
    param_name: str
    label: str = ""
    param_type: Literal["STRING", "DATE", "NUMBER", "BOOLEAN"] = "STRING"
    required: bool = False
    multi_valued: bool = False
    ui_hint: str = ""


class FilterRule(TemplateModel):
    scope_type: Literal["ALL_DB", "TABLE", "DYNAMIC_TABLE"] = "ALL_DB"
    scope_value: str | None = None
    param_name: str
    db_column: str
    operator: str = "="


class Variant(TemplateModel):
    code: str = Field(validation_alias=AliasChoices("code", "variantCode"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "variantName"))
    description: str = ""
    params: list[Param] = Field(default_factory=list)
    filter_rules: list[FilterRule] = Field(default_factory=list)


class Selection(TemplateModel):
    """Weak reference to the selected cell; lookups tolerate stale ids."""

    row_id: str
    cell_id: str = ""


# ---------------------------------------------------------------------------
# Persisted document (hierarchical form)
# ---------------------------------------------------------------------------
class RowDoc(TemplateModel):
    id: str | None = None
    row_type: RowType = "DATA"
    cells: list[Cell] | None = None
    dynamic_config: DynamicConfig | None = None
    height: int | None = None

    @field_validator("cells", mode="before")
    @classmethod
    def _default_cell_type(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [
                {"type": "TEXT", **c} if isinstance(c, dict) and "type" not in c else c
                for c in v
            ]
        return v


class ReportData(TemplateModel):
    columns: list[Column] = Field(default_factory=list)
    rows: list[RowDoc] = Field(default_factory=list)


class TemplateDocument(TemplateModel):
    template_meta: TemplateMeta = Field(default_factory=TemplateMeta)
    report_meta: ReportMeta = Field(default_factory=ReportMeta)
    report_data: ReportData = Field(default_factory=ReportData)
    variants: list[Variant] = Field(default_factory=list)
