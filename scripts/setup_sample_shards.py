"""Utility that launches a sample PostgreSQL Docker container with one database per city."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from citybooks.config import CONFIG_FILE, AppConfig, ShardConfig, TlsConfig, load_config, save_config

DEFAULT_CONTAINER = "citybooks-sample-shards"
DEFAULT_PORT = 5544
DEFAULT_PASSWORD = "citybooks"
DEFAULT_USER = "citybooks"
DOCKER_IMAGE = "postgres:16-alpine"

CITIES = (
    ("QUI", "Quito", "citybooks_quito"),
    ("GYE", "Guayaquil", "citybooks_guayaquil"),
    ("CUE", "Cuenca", "citybooks_cuenca"),
    ("MAN", "Manta", "citybooks_manta"),
)

SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS dbo;

CREATE TABLE IF NOT EXISTS departamentos (id_departamento TEXT PRIMARY KEY, dep_nombre TEXT);
CREATE TABLE IF NOT EXISTS roles (id_rol TEXT PRIMARY KEY, rol_descripcion TEXT);
CREATE TABLE IF NOT EXISTS ciuxprov (codigo_provincia CHAR(2), nombre_ciudad TEXT);
CREATE TABLE IF NOT EXISTS empleados (
    id_empleado VARCHAR(10) PRIMARY KEY, emp_cedula TEXT, emp_nombre1 TEXT, emp_nombre2 TEXT,
    emp_apellido1 TEXT, emp_apellido2 TEXT, emp_sexo CHAR(1), emp_fechanacimiento DATE,
    emp_sueldo NUMERIC(10,2), emp_mail TEXT, id_departamento TEXT, id_rol TEXT, id_ciudad CHAR(3)
);
CREATE TABLE IF NOT EXISTS facturas (
    id_factura CHAR(15) PRIMARY KEY, fac_fecha_hora TIMESTAMP, fac_descripcion TEXT,
    fac_subtotal NUMERIC(10,2), fac_iva NUMERIC(10,2), cli_nombre_completo TEXT,
    cli_ruc_ced TEXT, cli_mail TEXT, ciudad_cliente TEXT, estado_fac CHAR(3), id_ciudad CHAR(3)
);
CREATE TABLE IF NOT EXISTS proxfac (
    id_factura CHAR(15), id_producto TEXT, pro_descripcion TEXT, unidad_medida TEXT,
    pxf_cantidad INTEGER, pxf_valor NUMERIC(10,2), estado_pxf CHAR(3)
);
CREATE TABLE IF NOT EXISTS compras (
    id_compra VARCHAR(7) PRIMARY KEY, id_proveedor TEXT, oc_fecha_hora TIMESTAMP,
    oc_subtotal NUMERIC(10,2), oc_iva NUMERIC(10,2), estado_oc CHAR(3), usuario TEXT, id_ciudad CHAR(3)
);
CREATE TABLE IF NOT EXISTS proxoc (
    id_compra VARCHAR(7), id_producto TEXT, pxo_cantidad INTEGER, pxo_valor NUMERIC(10,2)
);
CREATE TABLE IF NOT EXISTS asientos (
    id_asiento VARCHAR(7) PRIMARY KEY, asi_fecha_hora TIMESTAMP, asi_descripcion TEXT, estado_asi CHAR(3)
);
CREATE TABLE IF NOT EXISTS detalle_asiento (
    id_asiento VARCHAR(7), id_cuenta TEXT, cue_nombre TEXT, det_debito NUMERIC(10,2),
    det_credito NUMERIC(10,2), det_descripcion TEXT, estado_det CHAR(3)
);
CREATE TABLE IF NOT EXISTS ajustes (
    id_ajuste VARCHAR(50) PRIMARY KEY, user_id TEXT, aju_descripcion TEXT, aju_fechahora TIMESTAMP,
    aju_num_produc INTEGER, estado_aju CHAR(3), id_ciudad CHAR(3)
);
CREATE TABLE IF NOT EXISTS pagxemp (
    id_pago CHAR(7), id_empleado VARCHAR(10), emp_sueldo NUMERIC(10,2), emp_bonificaciones NUMERIC(10,2),
    emp_descuentos NUMERIC(10,2), emp_valor_neto NUMERIC(10,2), estado_pxe CHAR(3)
);
CREATE TABLE IF NOT EXISTS bonxempxpag (
    id_bonificacion TEXT, bxe_fecha DATE, bxe_valor NUMERIC(10,2), estado_bxe CHAR(3),
    id_empleado VARCHAR(10), id_pago CHAR(7)
);
CREATE TABLE IF NOT EXISTS desxempxpag (
    id_descuento TEXT, dxe_fecha DATE, dxe_valor NUMERIC(10,2), estado_dxe CHAR(3),
    id_empleado VARCHAR(10), id_pago CHAR(7)
);

CREATE OR REPLACE FUNCTION dbo.sp_facturas_listar_resumen_con_ciudad(p_id_ciudad CHAR(3))
RETURNS TABLE (
    id_factura CHAR(15), fac_fecha_hora TIMESTAMP, fac_descripcion TEXT, fac_subtotal NUMERIC,
    fac_iva NUMERIC, fac_total NUMERIC, cli_nombre_completo TEXT, ciudad_cliente TEXT, estado_fac CHAR(3)
) LANGUAGE sql AS $$
    SELECT f.id_factura, f.fac_fecha_hora, f.fac_descripcion, f.fac_subtotal, f.fac_iva,
           f.fac_subtotal + f.fac_iva, f.cli_nombre_completo, f.ciudad_cliente, f.estado_fac
    FROM facturas f
    WHERE p_id_ciudad IS NULL OR f.id_ciudad = p_id_ciudad
    ORDER BY f.fac_fecha_hora DESC
$$;

CREATE OR REPLACE FUNCTION dbo.sp_ver_factura_completa(p_id_factura CHAR(15))
RETURNS TABLE (
    tipo TEXT, col1 TEXT, col2 TEXT, col3 TEXT, col4 TEXT, col5 TEXT, col6 TEXT, col7 TEXT
) LANGUAGE sql AS $$
    SELECT 'CABECERA', f.id_factura::text, f.fac_fecha_hora::text, f.cli_nombre_completo, f.cli_ruc_ced,
           f.cli_mail, f.fac_descripcion, f.estado_fac::text
    FROM facturas f WHERE f.id_factura = p_id_factura
    UNION ALL
    SELECT 'PARTIDA', p.id_producto, p.pro_descripcion, p.unidad_medida, p.pxf_cantidad::text,
           p.pxf_valor::text, (p.pxf_cantidad * p.pxf_valor)::text, p.estado_pxf::text
    FROM proxfac p WHERE p.id_factura = p_id_factura
    UNION ALL
    SELECT 'TOTALES', 'Subtotal=' || f.fac_subtotal, 'IVA=' || f.fac_iva,
           'Total=' || (f.fac_subtotal + f.fac_iva), NULL, NULL, NULL, NULL
    FROM facturas f WHERE f.id_factura = p_id_factura
$$;

CREATE OR REPLACE FUNCTION dbo.sp_ver_oc_completa(p_id_oc VARCHAR(7))
RETURNS TABLE (tipo TEXT, col1 TEXT, col2 TEXT, col3 TEXT, col4 TEXT, col5 TEXT)
LANGUAGE sql AS $$
    SELECT 'OC_CABECERA', c.id_compra::text, c.id_proveedor, c.oc_fecha_hora::text, c.estado_oc::text, c.usuario
    FROM compras c WHERE c.id_compra = p_id_oc
    UNION ALL
    SELECT 'OC_DETALLE', d.id_producto, d.pxo_cantidad::text, d.pxo_valor::text, NULL,
           (d.pxo_cantidad * d.pxo_valor)::text
    FROM proxoc d WHERE d.id_compra = p_id_oc
    UNION ALL
    SELECT 'TOTALES', 'Subtotal=' || c.oc_subtotal, 'IVA=' || c.oc_iva, 'Total=' || (c.oc_subtotal + c.oc_iva),
           NULL, NULL
    FROM compras c WHERE c.id_compra = p_id_oc
$$;

CREATE OR REPLACE FUNCTION dbo.sp_ver_asiento_completo(p_id_asiento VARCHAR(7))
RETURNS TABLE (
    tipo TEXT, id_asiento VARCHAR(7), asi_fecha_hora TIMESTAMP, asi_descripcion TEXT,
    asi_total_debe NUMERIC, asi_total_haber NUMERIC, estado_asi CHAR(3), id_cuenta TEXT, cue_nombre TEXT,
    det_debito NUMERIC, det_credito NUMERIC, det_descripcion TEXT, estado_det CHAR(3)
) LANGUAGE sql AS $$
    SELECT 'CABECERA', a.id_asiento, a.asi_fecha_hora, a.asi_descripcion,
           (SELECT sum(d.det_debito) FROM detalle_asiento d WHERE d.id_asiento = a.id_asiento),
           (SELECT sum(d.det_credito) FROM detalle_asiento d WHERE d.id_asiento = a.id_asiento),
           a.estado_asi, NULL, NULL, NULL, NULL, NULL, NULL
    FROM asientos a WHERE a.id_asiento = p_id_asiento
    UNION ALL
    SELECT 'DETALLE', d.id_asiento, NULL, NULL, NULL, NULL, NULL, d.id_cuenta, d.cue_nombre,
           d.det_debito, d.det_credito, d.det_descripcion, d.estado_det
    FROM detalle_asiento d WHERE d.id_asiento = p_id_asiento
$$;

CREATE OR REPLACE FUNCTION dbo.sp_ver_ajuste_completo_unido(p_id_ajuste VARCHAR(50))
RETURNS TABLE (
    tipo TEXT, id_ajuste VARCHAR(50), user_id TEXT, aju_descripcion TEXT, aju_fechahora TIMESTAMP,
    aju_num_produc INTEGER, estado_aju CHAR(3)
) LANGUAGE sql AS $$
    SELECT 'CABECERA', a.id_ajuste, a.user_id, a.aju_descripcion, a.aju_fechahora, a.aju_num_produc, a.estado_aju
    FROM ajustes a WHERE a.id_ajuste = p_id_ajuste
$$;

CREATE OR REPLACE FUNCTION dbo.sp_ver_log_general(p_limit INTEGER)
RETURNS TABLE (origen TEXT, id_documento TEXT, fecha_hora TIMESTAMP, descripcion TEXT)
LANGUAGE sql AS $$
    SELECT * FROM (
        SELECT 'FACTURA', id_factura::text, fac_fecha_hora, fac_descripcion FROM facturas
        UNION ALL
        SELECT 'COMPRA', id_compra::text, oc_fecha_hora, id_proveedor FROM compras
        UNION ALL
        SELECT 'ASIENTO', id_asiento::text, asi_fecha_hora, asi_descripcion FROM asientos
        UNION ALL
        SELECT 'AJUSTE', id_ajuste::text, aju_fechahora, aju_descripcion FROM ajustes
    ) log
    ORDER BY fecha_hora DESC
    LIMIT p_limit
$$;
""".strip()


def seed_sql(code: str, name: str) -> str:
    prefix = code[:1]
    return f"""
    INSERT INTO departamentos VALUES ('D01', 'Ventas') ON CONFLICT DO NOTHING;
    INSERT INTO roles VALUES ('R01', 'Vendedor') ON CONFLICT DO NOTHING;
    INSERT INTO ciuxprov VALUES ('17', 'Quito'), ('09', 'Guayaquil'), ('01', 'Cuenca'), ('13', 'Manta');
    INSERT INTO empleados VALUES
        ('{prefix}EMP001', '1712345678', 'Ana', 'Maria', 'Paredes', 'Lopez', 'F', '1990-04-02', 950.00,
         'ana@{code.lower()}.example.com', 'D01', 'R01', '{code}')
    ON CONFLICT DO NOTHING;
    INSERT INTO facturas VALUES
        ('{code}-FAC-000001', now(), 'Venta mostrador {name}', 100.00, 15.00, 'Cliente {name}',
         '0999999999', 'cliente@example.com', '{name}', 'ACT', '{code}')
    ON CONFLICT DO NOTHING;
    INSERT INTO proxfac VALUES ('{code}-FAC-000001', 'P001', 'Cuaderno', 'UND', 10, 10.00, 'ACT');
    INSERT INTO compras VALUES ('{code}OC01', 'PRV001', now(), 200.00, 30.00, 'ACT', 'admin', '{code}')
    ON CONFLICT DO NOTHING;
    INSERT INTO proxoc VALUES ('{code}OC01', 'P001', 20, 10.00);
    INSERT INTO asientos VALUES ('{code}AS01', now(), 'Asiento de apertura', 'ACT') ON CONFLICT DO NOTHING;
    INSERT INTO detalle_asiento VALUES
        ('{code}AS01', '1.1.01', 'Caja', 500.00, 0, 'Apertura', 'ACT'),
        ('{code}AS01', '3.1.01', 'Capital', 0, 500.00, 'Apertura', 'ACT');
    INSERT INTO ajustes VALUES ('{code}-AJU-01', 'admin', 'Conteo fisico', now(), 3, 'ACT', '{code}')
    ON CONFLICT DO NOTHING;
    INSERT INTO pagxemp VALUES ('2024-01', '{prefix}EMP001', 950.00, 50.00, 20.00, 980.00, 'PAG');
    INSERT INTO bonxempxpag VALUES ('B01', '2024-01-15', 50.00, 'ACT', '{prefix}EMP001', '2024-01');
    INSERT INTO desxempxpag VALUES ('D01', '2024-01-20', 20.00, 'ACT', '{prefix}EMP001', '2024-01');
    """.strip()


def run(cmd: list[str], *, check: bool = True, **kwargs) -> subprocess.CompletedProcess[str]:
    print("$", " ".join(cmd))
    return subprocess.run(cmd, check=check, text=True, **kwargs)


def container_exists(name: str) -> bool:
    result = subprocess.run(
        ["docker", "ps", "-a", "--filter", f"name={name}", "--format", "{{.ID}}"],
        text=True,
        capture_output=True,
    )
    return bool(result.stdout.strip())


def start_container(name: str, port: int, password: str, user: str) -> None:
    if container_exists(name):
        print(f"Container '{name}' already exists. Reusing it.")
        run(["docker", "start", name], check=False)
    else:
        run(
            [
                "docker",
                "run",
                "-d",
                "--name",
                name,
                "-e",
                f"POSTGRES_PASSWORD={password}",
                "-e",
                f"POSTGRES_USER={user}",
                "-p",
                f"{port}:5432",
                DOCKER_IMAGE,
            ]
        )
    wait_for_start(name, user)


def wait_for_start(name: str, user: str, retries: int = 15, delay: float = 1.0) -> None:
    for _ in range(retries):
        result = subprocess.run(["docker", "exec", name, "pg_isready", "-U", user], text=True)
        if result.returncode == 0:
            return
        time.sleep(delay)
    print("Warning: database did not report ready state; continuing anyway.")


def psql(name: str, user: str, database: str, sql: str, *, check: bool = True) -> None:
    run(
        ["docker", "exec", "-i", name, "psql", "-U", user, "-d", database, "-v", "ON_ERROR_STOP=1"],
        input=sql,
        check=check,
    )


def create_shards(name: str, user: str) -> None:
    for code, city, database in CITIES:
        # Fails harmlessly when the database already exists.
        psql(name, user, "postgres", f"CREATE DATABASE {database};", check=False)
        psql(name, user, database, SCHEMA_SQL)
        psql(name, user, database, seed_sql(code, city))


def update_config(port: int, user: str) -> None:
    try:
        config = load_config()
    except Exception:
        config = AppConfig()
    shards = [
        ShardConfig(
            code=code,
            name=city,
            host="localhost",
            port=port,
            database=database,
            user=user,
            tls=TlsConfig(encrypt=False),
        )
        for code, city, database in CITIES
    ]
    save_config(config.model_copy(update={"shards": shards}))
    print(f"Wrote {len(shards)} sample shards to {CONFIG_FILE}.")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--container", default=DEFAULT_CONTAINER, help="Docker container name")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Host port to expose Postgres on")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Postgres password")
    parser.add_argument("--user", default=DEFAULT_USER, help="Database user")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        start_container(args.container, args.port, args.password, args.user)
        create_shards(args.container, args.user)
    except FileNotFoundError:
        print("Docker is not installed or not on PATH.")
        return 1
    update_config(args.port, args.user)
    print(
        "Sample shards are ready. Export the password before querying, e.g.\n"
        f"  DB_PASSWORD={args.password} python -m citybooks invoices"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
