"""Pydantic models for template entities, requests, responses and plans."""

from gridtpl.contracts.common import (
    ChangeRecord,
    ErrorDetail,
    Metrics,
    ResponseEnvelope,
    Target,
    WarningDetail,
)
from gridtpl.contracts.plans import (
    EditPlan,
    Operation,
    PlanOptions,
    PlanTarget,
)
from gridtpl.contracts.responses import (
    HiddenCell,
    ReferenceLocation,
    TemplateSummary,
    WidthResult,
)
from gridtpl.contracts.template import (
    Column,
    ColumnFormat,
    DbCell,
    DynamicConfig,
    FormulaCell,
    ReportMeta,
    Row,
    Selection,
    TemplateDocument,
    TemplateMeta,
    TextCell,
    Variant,
)

__all__ = [
    "ChangeRecord",
    "Column",
    "ColumnFormat",
    "DbCell",
    "DynamicConfig",
    "EditPlan",
    "ErrorDetail",
    "FormulaCell",
    "HiddenCell",
    "Metrics",
    "Operation",
    "PlanOptions",
    "PlanTarget",
    "ReferenceLocation",
    "ReportMeta",
    "ResponseEnvelope",
    "Row",
    "Selection",
    "Target",
    "TemplateDocument",
    "TemplateMeta",
    "TemplateSummary",
    "TextCell",
    "Variant",
    "WarningDetail",
    "WidthResult",
]
