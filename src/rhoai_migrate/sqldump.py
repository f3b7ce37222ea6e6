"""Client-side SQL dump for database pods that ship a ``mariadb``/``mysql`` client but no dump tool."""

from __future__ import annotations

import logging
from typing import IO, Callable

from .models import DatabaseCredentials, ExecResult

log = logging.getLogger(__name__)

QueryRunner = Callable[[str], ExecResult]


class SqlDumpError(RuntimeError):
    """Raised when the table list or a table definition cannot be read."""


def client_command(client: str, credentials: DatabaseCredentials) -> list[str]:
    return [client, "-u", credentials.username, f"-p{credentials.password}", credentials.database]


def query_command(client: str, credentials: DatabaseCredentials, sql: str) -> list[str]:
    return [*client_command(client, credentials), "-N", "-B", "--raw", "-e", sql]


def native_dump_command(tool: str, credentials: DatabaseCredentials) -> list[str]:
    # Galera clusters reject LOCK TABLE on sequences.
    return [tool, "--skip-lock-tables", "-u", credentials.username, f"-p{credentials.password}", credentials.database]


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def list_tables(run_query: QueryRunner, database: str) -> list[str]:
    result = run_query(
        "SELECT table_name FROM information_schema.tables "
        f"WHERE table_schema={quote_literal(database)} AND table_type='BASE TABLE' "
        "ORDER BY table_name;"
    )
    if not result.ok:
        raise SqlDumpError(f"could not list tables: {result.stderr.strip() or 'client exited ' + str(result.returncode)}")
    return _lines(result.stdout)


def count_tables(run_query: QueryRunner) -> int | None:
    result = run_query("SHOW TABLES;")
    if not result.ok:
        return None
    return len(_lines(result.stdout))


def _create_statement(run_query: QueryRunner, table: str) -> str:
    result = run_query(f"SHOW CREATE TABLE {quote_identifier(table)};")
    if not result.ok or not result.stdout.strip():
        raise SqlDumpError(f"could not read definition of table {table}: {result.stderr.strip()}")
    # Output is "<table>\t<CREATE TABLE ...>".
    _, _, statement = result.stdout.rstrip("\n").partition("\t")
    if not statement:
        raise SqlDumpError(f"unexpected SHOW CREATE TABLE output for {table}")
    return statement


def _columns(run_query: QueryRunner, database: str, table: str) -> list[str]:
    result = run_query(
        "SELECT column_name FROM information_schema.columns "
        f"WHERE table_schema={quote_literal(database)} AND table_name={quote_literal(table)} "
        "ORDER BY ordinal_position;"
    )
    if not result.ok:
        return []
    return _lines(result.stdout)


def _row_values_query(table: str, columns: list[str]) -> str:
    quoted = ", ".join(
        f"REPLACE(REPLACE(QUOTE({quote_identifier(column)}), CHAR(10), '\\\\n'), CHAR(13), '\\\\r')"
        for column in columns
    )
    return f"SELECT CONCAT('(', CONCAT_WS(',', {quoted}), ')') FROM {quote_identifier(table)};"


def write_client_dump(
    run_query: QueryRunner,
    *,
    client: str,
    database: str,
    output: IO[str],
    generated_at: str,
) -> int:
    """Write a restorable dump of every base table in ``database`` to ``output``.

    Each table gets ``DROP``/``CREATE`` statements followed by one ``INSERT`` per row. When the
    row query fails the table's rows are kept as commented tab-separated lines instead.
    Returns the number of tables written.
    """
    tables = list_tables(run_query, database)
    output.write(f"-- SQL dump via {client} client\n")
    output.write(f"-- Database: {database}\n")
    output.write(f"-- Generated: {generated_at}\n")
    output.write("SET FOREIGN_KEY_CHECKS=0;\n")
    output.write("SET UNIQUE_CHECKS=0;\n")

    for table in tables:
        identifier = quote_identifier(table)
        output.write(f"\n-- Table: {table}\n")
        output.write(f"DROP TABLE IF EXISTS {identifier};\n")
        output.write(_create_statement(run_query, table).rstrip().rstrip(";") + ";\n")

        columns = _columns(run_query, database, table)
        rows = run_query(_row_values_query(table, columns)) if columns else None
        if rows is not None and rows.ok:
            column_list = ",".join(quote_identifier(column) for column in columns)
            for line in rows.stdout.splitlines():
                if line:
                    output.write(f"INSERT INTO {identifier} ({column_list}) VALUES {line};\n")
            continue

        log.warning("Could not generate INSERT statements for table %s, writing raw rows", table)
        raw = run_query(f"SELECT * FROM {identifier};")
        output.write(f"-- Raw tab-separated rows for {table}\n")
        for line in raw.stdout.splitlines() if raw.ok else []:
            output.write(f"-- {line}\n")

    output.write("\nSET FOREIGN_KEY_CHECKS=1;\n")
    output.write("SET UNIQUE_CHECKS=1;\n")
    return len(tables)
