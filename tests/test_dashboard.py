"""Tests for the dashboard views built on the fan-out executor."""

from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from citybooks.config import AppConfig, ShardConfig
from citybooks.connections import PoolManager
from citybooks.dashboard import DashboardService, open_dashboard
from citybooks.fanout import FanOutExecutor
from citybooks.query import QueryExecutionFailed
from citybooks.shaping import ShapedDocument


def _service(cluster) -> DashboardService:  # type: ignore[no-untyped-def]
    registry = cluster.registry()
    return DashboardService(FanOutExecutor(registry, PoolManager(registry)))


def _invoice_rows(invoice_id: str) -> list[dict[str, object]]:
    return [
        {"tipo": "CABECERA", "col1": invoice_id, "col2": "2024-01-01", "col3": "Ana", "col4": "1712", "col5": "a@x.ec", "col6": "Venta", "col7": "ACT"},
        {"tipo": "PARTIDA", "col1": "P1", "col2": "Lapiz", "col3": "UND", "col4": "2", "col5": "0.50", "col6": "1.00", "col7": "ACT"},
        {"tipo": "TOTALES", "col1": "Subtotal=1.00", "col2": "IVA=0.15", "col3": "Total=1.15"},
    ]


@pytest.mark.anyio
async def test_list_invoices_passes_null_city_under_all_scope(cluster) -> None:
    qui = cluster.add("QUI", [{"id_factura": "F1"}])
    gye = cluster.add("GYE", [{"id_factura": "F2"}])
    service = _service(cluster)

    merged = await service.list_invoices()

    assert [(row["id_factura"], row["shard_code"]) for row in merged] == [("F1", "QUI"), ("F2", "GYE")]
    sql, args = qui.calls[0]
    assert sql == "SELECT * FROM dbo.sp_facturas_listar_resumen_con_ciudad($1::char(3))"
    assert args == (None,)
    assert gye.calls[0][1] == (None,)


@pytest.mark.anyio
async def test_list_invoices_for_one_city_passes_its_code(cluster) -> None:
    qui = cluster.add("QUI", [{"id_factura": "F1"}])
    gye = cluster.add("GYE")
    service = _service(cluster)

    merged = await service.list_invoices("gye")

    assert len(merged) == 0
    assert qui.calls == []
    assert gye.calls[0][1] == ("GYE",)


@pytest.mark.anyio
async def test_list_employees_filters_by_city_only_for_single_scope(cluster) -> None:
    qui = cluster.add("QUI", [{"id_empleado": "E1"}])
    cluster.add("GYE", [{"id_empleado": "E2"}])
    service = _service(cluster)

    await service.list_employees()
    await service.list_employees("QUI")

    all_sql, all_args = qui.calls[0]
    city_sql, city_args = qui.calls[1]
    assert "WHERE e.id_ciudad" not in all_sql and all_args == ()
    assert "WHERE e.id_ciudad = $1" in city_sql and city_args == ("QUI",)


@pytest.mark.anyio
async def test_list_purchases_computes_totals_and_survives_outage(cluster, caplog: pytest.LogCaptureFixture) -> None:
    cluster.add("QUI", [{"id_compra": "OC1", "oc_subtotal": Decimal("100.00"), "oc_iva": Decimal("15.00")}])
    cluster.add("GYE", fail_connect=True)
    service = _service(cluster)

    with caplog.at_level(logging.WARNING):
        rows = await service.list_purchases()

    assert rows == [
        {
            "id_compra": "OC1",
            "oc_subtotal": Decimal("100.00"),
            "oc_iva": Decimal("15.00"),
            "oc_total": Decimal("115.00"),
            "shard_code": "QUI",
        }
    ]
    assert "GYE" in caplog.text


@pytest.mark.anyio
async def test_list_sales_maps_invoice_summary(cluster) -> None:
    cluster.add("QUI", [{"id_factura": "F1", "cli_nombre_completo": "Ana", "fac_total": Decimal("1.15")}])
    service = _service(cluster)

    rows = await service.list_sales()

    assert rows[0]["cli_nombre"] == "Ana"
    assert rows[0]["pxf_valor"] == "N/A"
    assert rows[0]["shard_code"] == "QUI"


@pytest.mark.anyio
async def test_list_single_city_failure_is_raised(cluster) -> None:
    cluster.add("QUI", error=RuntimeError("relation \"ajustes\" does not exist"))
    service = _service(cluster)

    with pytest.raises(QueryExecutionFailed):
        await service.list_inventory_adjustments("QUI")


@pytest.mark.anyio
async def test_journal_entries_use_same_query_for_every_scope(cluster) -> None:
    qui = cluster.add("QUI", [{"id_asiento": "AS1"}])
    service = _service(cluster)

    await service.list_journal_entries()
    await service.list_journal_entries("QUI")

    assert qui.calls[0] == qui.calls[1]


@pytest.mark.anyio
async def test_general_log_always_covers_every_city(cluster) -> None:
    qui = cluster.add("QUI", [{"origen": "FACTURA"}])
    cluster.add("GYE", [{"origen": "COMPRA"}])
    service = _service(cluster)

    merged = await service.general_log(limit=10)

    assert [row["shard_code"] for row in merged] == ["QUI", "GYE"]
    assert qui.calls[0] == ("SELECT * FROM dbo.sp_ver_log_general(p_limit => $1::integer)", (10,))


@pytest.mark.anyio
async def test_invoice_detail_scans_cities_until_found(cluster) -> None:
    def _only(invoice_id: str):  # type: ignore[no-untyped-def]
        def _respond(sql: str, args: tuple[object, ...]) -> list[dict[str, object]]:
            return _invoice_rows(invoice_id) if args == (invoice_id,) else []

        return _respond

    qui = cluster.add("QUI", responder=_only("F-OTHER"))
    gye = cluster.add("GYE", responder=_only("F-100"))
    cue = cluster.add("CUE", responder=_only("F-100"))
    service = _service(cluster)

    result = await service.invoice_detail("F-100")

    assert result.found
    assert result.shard_code == "GYE"
    assert isinstance(result.entity, ShapedDocument)
    assert result.entity.header["id_factura"] == "F-100"
    assert result.entity.totals == {"subtotal": 1.0, "iva": 0.15, "total": 1.15}
    assert len(qui.calls) == 1 and len(gye.calls) == 1
    assert cue.calls == []


@pytest.mark.anyio
async def test_purchase_detail_not_found_when_header_missing(cluster) -> None:
    cluster.add("QUI", [{"tipo": "OC_DETALLE", "col1": "P1"}])
    service = _service(cluster)

    result = await service.purchase_detail("OC1")

    assert not result.found


@pytest.mark.anyio
async def test_journal_entry_detail_in_one_city(cluster) -> None:
    cluster.add(
        "MAN",
        [
            {"tipo": "CABECERA", "id_asiento": "AS1", "asi_descripcion": "Apertura"},
            {"tipo": "DETALLE", "id_cuenta": "1.1.01", "cue_nombre": "Caja"},
        ],
    )
    service = _service(cluster)

    result = await service.journal_entry_detail("AS1", "MAN")

    assert result.shard_code == "MAN"
    assert result.entity.header["asi_descripcion"] == "Apertura"
    assert result.entity.details[0]["cue_nombre"] == "Caja"


@pytest.mark.anyio
async def test_inventory_adjustment_detail_single_city_error_is_raised(cluster) -> None:
    cluster.add("QUI", error=RuntimeError("function does not exist"))
    service = _service(cluster)

    with pytest.raises(QueryExecutionFailed):
        await service.inventory_adjustment_detail("AJ-1", "QUI")


@pytest.mark.anyio
async def test_employee_payroll_runs_batch_and_filters_period(cluster) -> None:
    def _respond(sql: str, args: tuple[object, ...]) -> list[dict[str, object]]:
        if "FROM pagxemp" in sql:
            return [
                {"pago": "2024-02", "empleado": "E1", "sueldo": 900, "neto": 880, "estado": "PAG"},
                {"pago": "2024-01", "empleado": "E1", "sueldo": 900, "neto": 930, "estado": "PAG"},
            ]
        return [
            {"id_detalle": "B1", "tipo_detalle": "BON", "fecha": "2024-01-15", "valor": 50, "estado": "ACT", "id_empleado": "E1", "id_pago": "2024-01"},
        ]

    cluster.add("QUI", [])
    gye = cluster.add("GYE", responder=_respond)
    service = _service(cluster)

    result = await service.employee_payroll("E1", year="2024", month="01")

    assert result.shard_code == "GYE"
    assert [period["periodo_pago"] for period in result.entity] == ["2024-01"]
    assert result.entity[0]["details"][0]["id_detalle"] == "B1"
    assert all(args == ("E1",) for _, args in gye.calls)


def test_cities_come_from_registry(cluster) -> None:
    cluster.add("QUI")
    cluster.add("MAN")

    assert [city["id_ciudad"] for city in _service(cluster).cities()] == ["QUI", "MAN"]


@pytest.mark.anyio
async def test_open_dashboard_closes_pools(cluster) -> None:
    shard = cluster.add("quito_db", [{"id_asiento": "AS1"}])
    config = AppConfig(
        shards=[
            ShardConfig(code="QUI", name="Quito", host="db", user="app", password="secret", database="quito_db"),
            ShardConfig(code="GYE", name="Guayaquil"),
        ]
    )

    async with open_dashboard(config) as service:
        merged = await service.list_journal_entries()
        assert [city["id_ciudad"] for city in service.cities()] == ["QUI"]

    assert [row["shard_code"] for row in merged] == ["QUI"]
    assert shard.pools[0].closed is True
