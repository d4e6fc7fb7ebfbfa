"""Mapping of raw shard rows into stable records.

Functions here never touch a connection. Multi-purpose stored functions
return one row set whose rows carry a kind tag (``tipo``) and positional
``colN`` columns; :class:`DocumentShape` turns such a set into a
``{header, details, totals}`` document so the tagged shape never leaves
this module.

Totals often arrive as labeled strings such as ``"Subtotal=123.45"``.
:func:`parse_labeled_number` extracts the first decimal number after
``<label>=`` (whitespace allowed around ``=``) and falls back to ``0.0``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Sequence

from .models import SHARD_TAG, Row
from .query import DEFAULT_TAG_COLUMN

LOG = logging.getLogger(__name__)

_NUMBER = r"(-?\d+(?:\.\d+)?)"

FieldMap = Mapping[str, str]

NOT_AVAILABLE = "N/A"


class MalformedResult(ValueError):
    """Raised when a row set lacks the record kinds a shape requires."""


@dataclass(frozen=True, slots=True)
class LabeledNumber:
    """Totals field stored as ``<label>=<number>`` inside ``column``."""

    column: str
    label: str


@dataclass(frozen=True, slots=True)
class ShapedDocument:
    """Header, ordered detail lines and optional totals of one entity."""

    header: dict[str, Any]
    details: tuple[dict[str, Any], ...] = ()
    totals: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "details": list(self.details),
            "totals": self.totals,
        }


def parse_labeled_number(text: object, label: str) -> float:
    """Return the number following ``label=`` in ``text``, or ``0.0``."""

    if text is None:
        return 0.0
    match = re.search(rf"{re.escape(label)}\s*=\s*{_NUMBER}", str(text))
    if not match:
        return 0.0
    return float(match.group(1))


def demultiplex(rows: Iterable[Row], tag_column: str = DEFAULT_TAG_COLUMN) -> dict[str, list[Row]]:
    """Group rows by their kind tag, keeping row order within each kind."""

    groups: dict[str, list[Row]] = {}
    for index, row in enumerate(rows):
        kind = row.get(tag_column)
        if kind is None:
            raise MalformedResult(f"Row {index} has no '{tag_column}' tag")
        groups.setdefault(str(kind).strip(), []).append(row)
    return groups


def map_row(row: Row, fields: FieldMap | None, *, drop: Sequence[str] = ()) -> dict[str, Any]:
    """Rename columns per ``fields`` (output -> source); ``None`` keeps the row as-is."""

    if fields is None:
        return {key: value for key, value in row.items() if key not in drop}
    return {name: row.get(column) for name, column in fields.items()}


def has_row_kind(kind: str, tag_column: str = DEFAULT_TAG_COLUMN) -> Callable[[Sequence[Row]], bool]:
    """Predicate for detail searches: true when any row carries ``kind``."""

    def _predicate(rows: Sequence[Row]) -> bool:
        return any(str(row.get(tag_column, "")).strip() == kind for row in rows)

    return _predicate


@dataclass(frozen=True, slots=True)
class DocumentShape:
    """Layout of a tagged row set describing one document."""

    header_kind: str
    detail_kind: str
    header_fields: FieldMap | None = None
    detail_fields: FieldMap | None = None
    totals_kind: str | None = None
    totals_fields: Mapping[str, str | LabeledNumber] = field(default_factory=dict)
    tag_column: str = DEFAULT_TAG_COLUMN

    def shape(self, rows: Sequence[Row]) -> ShapedDocument:
        groups = demultiplex(rows, self.tag_column)
        headers = groups.get(self.header_kind)
        if not headers:
            raise MalformedResult(f"No '{self.header_kind}' row in result")
        if len(headers) > 1:
            LOG.debug("Ignoring %d extra '%s' rows", len(headers) - 1, self.header_kind)
        drop = (self.tag_column, SHARD_TAG)
        header = map_row(headers[0], self.header_fields, drop=drop)
        details = tuple(
            map_row(row, self.detail_fields, drop=drop)
            for row in groups.get(self.detail_kind, ())
        )
        totals = None
        if self.totals_kind is not None:
            totals_rows = groups.get(self.totals_kind)
            if totals_rows:
                totals = self._totals(totals_rows[0])
        return ShapedDocument(header=header, details=details, totals=totals)

    def matches(self, rows: Sequence[Row]) -> bool:
        return has_row_kind(self.header_kind, self.tag_column)(rows)

    def _totals(self, row: Row) -> dict[str, Any]:
        totals: dict[str, Any] = {}
        for name, source in self.totals_fields.items():
            if isinstance(source, LabeledNumber):
                totals[name] = parse_labeled_number(row.get(source.column), source.label)
            else:
                totals[name] = row.get(source)
        return totals


def _positional(*names: str, prefix: str = "col") -> dict[str, str]:
    return {name: f"{prefix}{index}" for index, name in enumerate(names, start=1) if name}


INVOICE_DOCUMENT = DocumentShape(
    header_kind="CABECERA",
    header_fields=_positional(
        "id_factura",
        "fecha_hora",
        "cliente_nombre",
        "cliente_ruc_ced",
        "cliente_mail",
        "descripcion_factura",
        "estado_factura",
    ),
    detail_kind="PARTIDA",
    detail_fields=_positional(
        "id_producto",
        "descripcion_producto",
        "unidad_medida",
        "cantidad",
        "precio_unitario",
        "subtotal_producto",
        "estado_detalle",
    ),
    totals_kind="TOTALES",
    totals_fields={
        "subtotal": LabeledNumber("col1", "Subtotal"),
        "iva": LabeledNumber("col2", "IVA"),
        "total": LabeledNumber("col3", "Total"),
    },
)

PURCHASE_ORDER_DOCUMENT = DocumentShape(
    header_kind="OC_CABECERA",
    header_fields=_positional(
        "id_orden_compra",
        "proveedor_id",
        "fecha_hora",
        "estado_orden",
        "usuario",
    ),
    detail_kind="OC_DETALLE",
    # col4 is not populated for detail lines.
    detail_fields=_positional(
        "id_producto",
        "cantidad",
        "precio_unitario",
        "",
        "subtotal_producto",
    ),
    totals_kind="TOTALES",
    totals_fields={
        "subtotal": LabeledNumber("col1", "Subtotal"),
        "iva": LabeledNumber("col2", "IVA"),
        "total": LabeledNumber("col3", "Total"),
    },
)

JOURNAL_ENTRY_DOCUMENT = DocumentShape(
    header_kind="CABECERA",
    header_fields={
        "id_asiento": "id_asiento",
        "asi_fecha_hora": "asi_fecha_hora",
        "asi_descripcion": "asi_descripcion",
        "asi_total_debe": "asi_total_debe",
        "asi_total_haber": "asi_total_haber",
        "estado_asi": "estado_asi",
    },
    detail_kind="DETALLE",
    detail_fields={
        "id_cuenta": "id_cuenta",
        "cue_nombre": "cue_nombre",
        "det_debito": "det_debito",
        "det_credito": "det_credito",
        "det_descripcion": "det_descripcion",
        "estado_det": "estado_det",
    },
)

INVENTORY_ADJUSTMENT_DOCUMENT = DocumentShape(
    header_kind="CABECERA",
    detail_kind="DETALLE",
)


def shape_purchase_row(row: Row) -> dict[str, Any]:
    """Purchase listing row with its computed order total."""

    subtotal = row.get("oc_subtotal") or 0
    iva = row.get("oc_iva") or 0
    shaped = dict(row)
    shaped["oc_total"] = _add(subtotal, iva)
    return shaped


def shape_sale_row(row: Row) -> dict[str, Any]:
    """Sales listing row derived from an invoice summary row."""

    shaped: dict[str, Any] = {
        "id_factura": row.get("id_factura"),
        "fac_fecha_hora": row.get("fac_fecha_hora"),
        "fac_descripcion": row.get("fac_descripcion"),
        "fac_subtotal": row.get("fac_subtotal"),
        "fac_iva": row.get("fac_iva"),
        "fac_total": row.get("fac_total"),
        "cli_nombre": row.get("cli_nombre_completo"),
        "ciudad_cliente": row.get("ciudad_cliente"),
        "pro_descripcion": NOT_AVAILABLE,
        "pxf_cantidad": NOT_AVAILABLE,
        "pxf_valor": NOT_AVAILABLE,
        "estado_fac": row.get("estado_fac"),
    }
    if SHARD_TAG in row:
        shaped[SHARD_TAG] = row[SHARD_TAG]
    return shaped


def period_matches(period: object, year: str | None, month: str | None) -> bool:
    """Check a ``YYYY-MM`` payroll period against year/month filters.

    ``None`` or ``"ALL"`` disables a filter.
    """

    if not period:
        return False
    year_part, _, month_part = str(period).partition("-")
    if _is_filter(year):
        try:
            if int(year_part) != int(str(year)):
                return False
        except ValueError:
            return False
    if _is_filter(month) and month_part != str(month).zfill(2):
        return False
    return True


def shape_payroll(
    rows: Sequence[Row],
    *,
    year: str | None = None,
    month: str | None = None,
    tag_column: str = DEFAULT_TAG_COLUMN,
) -> list[dict[str, Any]]:
    """Assemble payroll periods with their bonus and discount lines.

    Expects ``PAGO`` rows (one per period) and ``DETALLE`` rows (bonuses and
    discounts) in a single tagged row set.
    """

    groups = demultiplex(rows, tag_column)
    periods = [
        row for row in groups.get("PAGO", ()) if period_matches(row.get("pago"), year, month)
    ]
    details = groups.get("DETALLE", [])
    payroll: list[dict[str, Any]] = []
    for period in periods:
        lines = [
            {
                "id_detalle": item.get("id_detalle"),
                "tipo_detalle": item.get("tipo_detalle"),
                "fecha_detalle": item.get("fecha"),
                "valor_detalle": item.get("valor"),
                "estado_detalle": item.get("estado"),
            }
            for item in details
            if item.get("id_empleado") == period.get("empleado") and item.get("id_pago") == period.get("pago")
        ]
        payroll.append(
            {
                "periodo_pago": period.get("pago"),
                "empleado_id": period.get("empleado"),
                "sueldo_base": period.get("sueldo"),
                "bonificaciones": period.get("bonificaciones"),
                "descuentos": period.get("descuentos"),
                "neto_a_pagar": period.get("neto"),
                "estado_pago": period.get("estado"),
                "details": lines,
            }
        )
    return payroll


def _is_filter(value: str | None) -> bool:
    return value is not None and str(value).strip().upper() not in ("", "ALL")


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, Decimal) or isinstance(right, Decimal):
        return Decimal(str(left)) + Decimal(str(right))
    return left + right


__all__ = [
    "DocumentShape",
    "INVENTORY_ADJUSTMENT_DOCUMENT",
    "INVOICE_DOCUMENT",
    "JOURNAL_ENTRY_DOCUMENT",
    "LabeledNumber",
    "MalformedResult",
    "NOT_AVAILABLE",
    "PURCHASE_ORDER_DOCUMENT",
    "ShapedDocument",
    "demultiplex",
    "has_row_kind",
    "map_row",
    "parse_labeled_number",
    "period_matches",
    "shape_payroll",
    "shape_purchase_row",
    "shape_sale_row",
]
