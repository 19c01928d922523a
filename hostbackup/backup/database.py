"""
Database export for backup runs.

Streams every table of a database to a MySQL-compatible SQL dump using
SQLAlchemy Core with server-side cursors, so memory use does not grow with
table size. Dumps above the configured threshold are gzip-compressed.
"""

import logging
import os
import time
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Optional, TextIO

from sqlalchemy import MetaData, Table, create_engine, func, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.schema import CreateTable

from hostbackup.context import Deadline, RunContext
from .compression import compress_if_oversized, dump_filename, format_bytes
from .results import DatabaseExportResult, ExportFailure, ExportSuccess


logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 10000

_ESCAPES = str.maketrans({
    '\\': '\\\\',
    "'": "\\'",
    '"': '\\"',
    '\n': '\\n',
    '\r': '\\r',
    '\x1a': '\\Z',
})


class ExportError(Exception):
    """Raised when databases cannot be listed or exported."""
    pass


def quote_identifier(name: str) -> str:
    return '`' + name.replace('`', '``') + '`'


def escape_string(value: str) -> str:
    """Escape a string for a single-quoted MySQL literal (NUL-free input)."""
    return value.translate(_ESCAPES)


def hex_literal(data: bytes) -> str:
    if not data:
        return "''"
    return '0x' + data.hex()


def format_value(value: Any) -> str:
    """
    Serialize one field for an INSERT statement.

    NULL for None, a hex literal for binary data or strings with embedded
    zero bytes, bare numbers, and an escaped quoted literal otherwise.
    """
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return hex_literal(bytes(value))
    if isinstance(value, timedelta):
        value = _format_time(value)
    elif not isinstance(value, str):
        value = str(value)

    if '\0' in value:
        return hex_literal(value.encode('utf-8'))
    return "'" + escape_string(value) + "'"


def _format_time(value: timedelta) -> str:
    # MySQL TIME columns come back as timedelta and may exceed 24h or be negative
    seconds = int(value.total_seconds())
    sign = '-' if seconds < 0 else ''
    seconds = abs(seconds)
    return f"{sign}{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


class DatabaseExporter:
    """
    Discovers and exports databases from one server.
    """

    def __init__(self, ctx: RunContext, token: str, engine: Optional[Engine] = None,
                 deadline: Optional[Deadline] = None):
        """
        Initialize database exporter.

        Args:
            ctx: Run context (temp dir, compression threshold, skip list)
            token: Run timestamp token used in dump filenames
            engine: SQLAlchemy engine; created from ctx.database_url if omitted
            deadline: Soft deadline checked during long table exports
        """
        self.ctx = ctx
        self.token = token
        self.engine = engine if engine is not None else create_engine(ctx.database_url, pool_pre_ping=True)
        self.deadline = deadline

    def discover(self) -> List[str]:
        """
        List the databases to export, excluding system catalogs.

        Returns:
            Database names in server order

        Raises:
            ExportError: If the server cannot be reached or listed
        """
        try:
            with self.engine.connect() as conn:
                names = inspect(conn).get_schema_names()
        except Exception as e:
            raise ExportError(f"Database discovery failed: {e}")

        skip = set(self.ctx.skip_databases)
        databases = [name for name in names if name not in skip]

        logger.info(f"Discovered {len(databases)} database(s): {', '.join(databases)}")
        return databases

    def export(self, name: str) -> DatabaseExportResult:
        """
        Export one database to a dump artifact in the temp directory.

        Args:
            name: Database name

        Returns:
            ExportSuccess with the artifact details, or ExportFailure. A
            failure never leaves a partial artifact behind.
        """
        dump_path = self.ctx.temp_dir / dump_filename(name, self.token)
        gz_path = dump_path.with_name(dump_path.name + '.gz')
        started = time.monotonic()

        logger.info(f"Exporting database: {name}")

        try:
            table_count, row_count = self._write_dump(name, dump_path)
            size = dump_path.stat().st_size
            elapsed = round(time.monotonic() - started, 2)
            logger.info(
                f"Database {name} exported: {table_count} tables, {row_count} rows, "
                f"{format_bytes(size)} in {elapsed}s"
            )

            outcome = compress_if_oversized(dump_path, self.ctx.gzip_threshold_bytes)
            if not outcome.compressed:
                logger.info(f"Database {name} kept uncompressed (size <= {format_bytes(self.ctx.gzip_threshold_bytes)})")

        except Exception as e:
            logger.error(f"Failed to export database {name}: {e}")
            for partial in (dump_path, gz_path):
                try:
                    os.remove(partial)
                except FileNotFoundError:
                    pass
                except OSError as remove_error:
                    logger.warning(f"Failed to remove partial dump {partial}: {remove_error}")
            return ExportFailure(database=name, error=str(e))

        return ExportSuccess(
            database=name,
            path=outcome.path,
            uncompressed_size=outcome.uncompressed_size,
            compressed_size=outcome.compressed_size,
            compressed=outcome.compressed,
        )

    def _write_dump(self, name: str, dump_path: Path):
        table_count = 0
        row_count = 0

        with self.engine.connect() as conn, open(dump_path, 'w', encoding='utf-8', newline='\n') as out:
            version = '.'.join(str(part) for part in (conn.dialect.server_version_info or ()))
            out.write(f"-- Database Export: {name}\n")
            out.write(f"-- Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            out.write(f"-- Server Version: {version or 'unknown'}\n\n")
            out.write('SET SQL_MODE = "NO_AUTO_VALUE_ON_ZERO";\n')
            out.write('SET time_zone = "+00:00";\n\n')

            for table_name in inspect(conn).get_table_names(schema=name):
                table = Table(table_name, MetaData(), schema=name, autoload_with=conn)
                row_count += self._write_table(conn, out, name, table)
                table_count += 1

        return table_count, row_count

    def _write_table(self, conn: Connection, out: TextIO, database: str, table: Table) -> int:
        quoted = quote_identifier(table.name)
        logger.debug(f"Exporting table: {table.name}")

        out.write(f"\n-- Table structure for: {table.name}\n")
        out.write(f"DROP TABLE IF EXISTS {quoted};\n")
        out.write(self._create_statement(conn, database, table) + ";\n\n")

        expected = conn.execute(select(func.count()).select_from(table)).scalar() or 0
        columns = ', '.join(quote_identifier(column.name) for column in table.columns)
        exported = 0

        result = conn.execution_options(stream_results=True).execute(select(table))
        for row in result:
            if exported == 0:
                out.write(f"-- Data for table: {table.name} (expected rows: {expected})\n")

            values = ', '.join(format_value(value) for value in row)
            out.write(f"INSERT INTO {quoted} ({columns}) VALUES ({values});\n")
            exported += 1

            if exported % PROGRESS_INTERVAL == 0:
                logger.debug(f"Exporting {table.name}: {exported} / {expected} rows processed...")
                if self.deadline is not None:
                    progress = round(exported / expected * 100) if expected else 0
                    self.deadline.check('Database export', f"Table: {table.name}, Progress: {progress}%")

        if exported:
            out.write("\n")

        if exported == 0 and expected > 0:
            logger.warning(
                f"Table {table.name} has {expected} rows but export returned 0 (possible permission issue)"
            )
        elif exported != expected:
            logger.warning(
                f"Row count mismatch in {table.name}: exported {exported}, expected {expected} "
                f"(possible permission issue)"
            )

        return exported

    def _create_statement(self, conn: Connection, database: str, table: Table) -> str:
        if conn.dialect.name == 'mysql':
            row = conn.execute(
                text(f"SHOW CREATE TABLE {quote_identifier(database)}.{quote_identifier(table.name)}")
            ).fetchone()
            return row[1]

        # Referenced tables are not copied along, so foreign keys cannot be rendered here
        unqualified = table.to_metadata(MetaData(), schema=None)
        ddl = CreateTable(unqualified, include_foreign_key_constraints=[])
        return str(ddl.compile(dialect=conn.dialect)).strip()
