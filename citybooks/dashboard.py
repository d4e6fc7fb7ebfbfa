"""Dashboard queries for every listing and detail view, built on the fan-out executor."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from .config import AppConfig
from .connections import PoolManager
from .fanout import FanOutExecutor
from .models import DetailSearchResult, MergedResult
from .query import Param, ProcedureCall, QuerySpec, TextQuery, batch
from .registry import ALL_SCOPE, ShardRegistry, is_all_scope
from .shaping import (
    INVENTORY_ADJUSTMENT_DOCUMENT,
    INVOICE_DOCUMENT,
    JOURNAL_ENTRY_DOCUMENT,
    PURCHASE_ORDER_DOCUMENT,
    DocumentShape,
    has_row_kind,
    shape_payroll,
    shape_purchase_row,
    shape_sale_row,
)

LOG = logging.getLogger(__name__)

INVOICE_SUMMARY_FUNCTION = "dbo.sp_facturas_listar_resumen_con_ciudad"
INVOICE_DETAIL_FUNCTION = "dbo.sp_ver_factura_completa"
PURCHASE_DETAIL_FUNCTION = "dbo.sp_ver_oc_completa"
JOURNAL_DETAIL_FUNCTION = "dbo.sp_ver_asiento_completo"
ADJUSTMENT_DETAIL_FUNCTION = "dbo.sp_ver_ajuste_completo_unido"
GENERAL_LOG_FUNCTION = "dbo.sp_ver_log_general"

_EMPLOYEES_SQL = """
    SELECT
        e.id_empleado, e.emp_cedula, e.emp_nombre1, e.emp_nombre2,
        e.emp_apellido1, e.emp_apellido2, e.emp_sexo, e.emp_fechanacimiento,
        e.emp_sueldo, e.emp_mail, d.dep_nombre, r.rol_descripcion,
        e.id_ciudad AS empleado_ciudad_asignada,
        (SELECT cp.nombre_ciudad
         FROM ciuxprov cp
         WHERE LEFT(e.emp_cedula, 2) = cp.codigo_provincia
         ORDER BY cp.nombre_ciudad
         LIMIT 1) AS ciudad_cedula
    FROM empleados e
    LEFT JOIN departamentos d ON e.id_departamento = d.id_departamento
    LEFT JOIN roles r ON e.id_rol = r.id_rol
    {where}
    ORDER BY e.emp_apellido1, e.emp_nombre1
"""

_PURCHASES_SQL = """
    SELECT id_compra, id_proveedor, oc_fecha_hora, oc_subtotal, oc_iva, estado_oc
    FROM compras
    {where}
    ORDER BY oc_fecha_hora DESC
"""

_JOURNAL_ENTRIES_SQL = """
    SELECT id_asiento, asi_fecha_hora, asi_descripcion, estado_asi
    FROM asientos
    ORDER BY asi_fecha_hora DESC, id_asiento DESC
"""

_ADJUSTMENTS_SQL = """
    SELECT id_ajuste, user_id, aju_descripcion, aju_fechahora, aju_num_produc, estado_aju
    FROM ajustes
    {where}
    ORDER BY aju_fechahora DESC, id_ajuste DESC
"""

_PAYROLL_PERIODS_SQL = """
    SELECT
        id_pago AS pago,
        id_empleado AS empleado,
        emp_sueldo AS sueldo,
        emp_bonificaciones AS bonificaciones,
        emp_descuentos AS descuentos,
        emp_valor_neto AS neto,
        estado_pxe AS estado
    FROM pagxemp
    WHERE id_empleado = $1
    ORDER BY id_pago DESC
"""

_PAYROLL_LINES_SQL = """
    SELECT id_bonificacion AS id_detalle, 'BON' AS tipo_detalle, bxe_fecha AS fecha,
           bxe_valor AS valor, estado_bxe AS estado, id_empleado, id_pago
    FROM bonxempxpag
    WHERE id_empleado = $1
    UNION ALL
    SELECT id_descuento AS id_detalle, 'DES' AS tipo_detalle, dxe_fecha AS fecha,
           dxe_valor AS valor, estado_dxe AS estado, id_empleado, id_pago
    FROM desxempxpag
    WHERE id_empleado = $1
    ORDER BY fecha DESC, tipo_detalle, id_detalle
"""


def _city_filtered(sql: str, column: str, scope: str | None, code: str) -> TextQuery:
    if is_all_scope(scope):
        return TextQuery(sql.format(where=""))
    return TextQuery(sql.format(where=f"WHERE {column} = $1"), (code,))


class DashboardService:
    """One method per dashboard view; each takes a city scope (default ``ALL``)."""

    def __init__(self, executor: FanOutExecutor) -> None:
        self._executor = executor

    @property
    def registry(self) -> ShardRegistry:
        return self._executor.registry

    def cities(self) -> list[dict[str, str]]:
        return self.registry.cities()

    async def list_invoices(self, scope: str | None = ALL_SCOPE) -> MergedResult:
        return await self._executor.run_all(scope, self._invoice_summary(scope))

    async def list_sales(self, scope: str | None = ALL_SCOPE) -> list[dict[str, Any]]:
        merged = await self._executor.run_all(scope, self._invoice_summary(scope))
        return [shape_sale_row(row) for row in merged]

    async def list_employees(self, scope: str | None = ALL_SCOPE) -> MergedResult:
        return await self._executor.run_all(
            scope, lambda code: _city_filtered(_EMPLOYEES_SQL, "e.id_ciudad", scope, code)
        )

    async def list_purchases(self, scope: str | None = ALL_SCOPE) -> list[dict[str, Any]]:
        merged = await self._executor.run_all(
            scope, lambda code: _city_filtered(_PURCHASES_SQL, "id_ciudad", scope, code)
        )
        return [shape_purchase_row(row) for row in merged]

    async def list_journal_entries(self, scope: str | None = ALL_SCOPE) -> MergedResult:
        return await self._executor.run_all(scope, lambda code: TextQuery(_JOURNAL_ENTRIES_SQL))

    async def list_inventory_adjustments(self, scope: str | None = ALL_SCOPE) -> MergedResult:
        return await self._executor.run_all(
            scope, lambda code: _city_filtered(_ADJUSTMENTS_SQL, "id_ciudad", scope, code)
        )

    async def general_log(self, limit: int = 50) -> MergedResult:
        """Latest transactions from every city."""

        return await self._executor.run_all(
            ALL_SCOPE,
            lambda code: ProcedureCall(GENERAL_LOG_FUNCTION, kwargs={"p_limit": Param(limit, "integer")}),
        )

    async def invoice_detail(self, invoice_id: str, scope: str | None = ALL_SCOPE) -> DetailSearchResult:
        return await self._document(
            scope, INVOICE_DETAIL_FUNCTION, Param(invoice_id, "char(15)"), INVOICE_DOCUMENT
        )

    async def purchase_detail(self, order_id: str, scope: str | None = ALL_SCOPE) -> DetailSearchResult:
        return await self._document(
            scope, PURCHASE_DETAIL_FUNCTION, Param(order_id, "varchar(7)"), PURCHASE_ORDER_DOCUMENT
        )

    async def journal_entry_detail(self, entry_id: str, scope: str | None = ALL_SCOPE) -> DetailSearchResult:
        return await self._document(
            scope, JOURNAL_DETAIL_FUNCTION, Param(entry_id, "varchar(7)"), JOURNAL_ENTRY_DOCUMENT
        )

    async def inventory_adjustment_detail(
        self, adjustment_id: str, scope: str | None = ALL_SCOPE
    ) -> DetailSearchResult:
        return await self._document(
            scope,
            ADJUSTMENT_DETAIL_FUNCTION,
            Param(adjustment_id, "varchar(50)"),
            INVENTORY_ADJUSTMENT_DOCUMENT,
        )

    async def employee_payroll(
        self,
        employee_id: str,
        scope: str | None = ALL_SCOPE,
        *,
        year: str | None = ALL_SCOPE,
        month: str | None = ALL_SCOPE,
    ) -> DetailSearchResult:
        """Payroll periods of one employee, optionally narrowed to a year/month.

        The entity is the list of periods; a shard matches once it holds at
        least one period for the employee.
        """

        def _build(code: str) -> QuerySpec:
            return batch(
                ("PAGO", TextQuery(_PAYROLL_PERIODS_SQL, (employee_id,))),
                ("DETALLE", TextQuery(_PAYROLL_LINES_SQL, (employee_id,))),
            )

        return await self._executor.find_first(
            scope,
            _build,
            has_row_kind("PAGO"),
            shape=lambda rows: shape_payroll(rows, year=year, month=month),
        )

    def _invoice_summary(self, scope: str | None):
        def _build(code: str) -> QuerySpec:
            # NULL lists every invoice stored in that city's database.
            city = None if is_all_scope(scope) else code
            return ProcedureCall(INVOICE_SUMMARY_FUNCTION, (Param(city, "char(3)"),))

        return _build

    async def _document(
        self,
        scope: str | None,
        function: str,
        key: Param,
        document: DocumentShape,
    ) -> DetailSearchResult:
        result = await self._executor.find_first(
            scope,
            lambda code: ProcedureCall(function, (key,)),
            document.matches,
            shape=document.shape,
        )
        if not result.found:
            LOG.info("%s(%s) found no match in scope %s", function, key.value, scope or ALL_SCOPE)
        return result


@asynccontextmanager
async def open_dashboard(config: AppConfig) -> AsyncIterator[DashboardService]:
    """Wire registry, pools and executor from config; pools close on exit."""

    registry = ShardRegistry.from_config(config)
    pools = PoolManager(
        registry,
        connect_timeout=config.connect_timeout,
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
    )
    async with pools:
        executor = FanOutExecutor(registry, pools, timeout=config.query_timeout)
        yield DashboardService(executor)


__all__ = [
    "DashboardService",
    "open_dashboard",
]
