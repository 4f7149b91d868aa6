"""
Verification pipeline for a possibly corrupted data directory.

1. try_open: the guarded open raced against a timeout. A corrupted
   directory may hang the open path instead of failing it.
2. verify_integrity: layered structural checks. Every layer runs even when
   an earlier one failed, so the report shows how many independent
   structures are damaged.
3. Scenario checks (metadata reconciliation, duplicate keys, scan
   reconciliation, expected row count, expected columns, write probes),
   composed per scenario.

Nothing here mutates the directory. The write probe removes everything it
created and the table write probe rolls its row back.
"""

import os
import sqlite3
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from core.config import Config
from core.engine import ENGINE_META_TABLE, EngineHandle, open_data_dir
from core.structured_events import EventEmitter, EventSeverity, EventType
from utils.error_messages import format_integrity_error, format_open_timeout_error
from utils.safety import TimeoutException, run_with_timeout


logger = logging.getLogger(__name__)

PROBE_TABLE = 'crashguard_write_probe'


class OpenTimeout(Exception):
    """Opening did not finish in time. Corruption or slow recovery: ambiguous."""

    def __init__(self, data_dir: Path, timeout_ms: int):
        self.data_dir = data_dir
        self.timeout_ms = timeout_ms
        super().__init__(format_open_timeout_error(data_dir, timeout_ms))


class IntegrityFailure(Exception):
    """Structural damage detected after a successful open."""

    def __init__(self, data_dir: Path, report: 'IntegrityReport'):
        self.data_dir = data_dir
        self.report = report
        super().__init__(format_integrity_error(data_dir, list(report.issues)))


@dataclass(frozen=True)
class OpenResult:
    success: bool
    handle: Optional[EngineHandle] = None
    error: Optional[BaseException] = None
    timed_out: bool = False

    @property
    def error_text(self) -> Optional[str]:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class IntegrityReport:
    """Outcome of verify_integrity. intact is true iff there are no issues."""
    issues: Tuple[str, ...] = ()

    @property
    def intact(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {'intact': self.intact, 'issues': list(self.issues)}


class CheckCategory(Enum):
    RECONCILIATION = 'reconciliation'
    DUPLICATES = 'duplicates'
    SCAN = 'scan'
    SCHEMA = 'schema'
    WRITE_PROBE = 'write_probe'


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one scenario-specific check."""
    name: str
    category: CheckCategory
    issues: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {'name': self.name, 'category': self.category.value, 'passed': self.passed,
                'issues': list(self.issues)}


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class VerificationPipeline:
    """Opens a data directory under a timeout and checks its consistency."""

    def __init__(self, config: Optional[Config] = None, emitter: Optional[EventEmitter] = None,
                 opener: Optional[Callable[..., EngineHandle]] = None):
        """
        Args:
            config: Configuration (open timeout, layout)
            emitter: Optional structured event sink
            opener: Open function; defaults to the guarded engine open
        """
        self.config = config or Config()
        self.emitter = emitter
        self.opener = opener

    def try_open(self, data_dir: Union[str, Path], timeout_ms: Optional[int] = None) -> OpenResult:
        """
        Open data_dir, giving up after timeout_ms.

        A handle produced after the timeout is closed as soon as it
        appears, so an abandoned open never keeps the directory locked.
        """
        data_dir = Path(os.path.abspath(data_dir))
        timeout_ms = timeout_ms if timeout_ms is not None else self.config.open_timeout_ms
        opener = self.opener or open_data_dir

        try:
            handle = run_with_timeout(
                lambda: opener(data_dir, config=self.config),
                timeout_ms / 1000.0,
                operation=f"open {data_dir.name}",
                on_abandon=lambda late: late.close()
            )
        except TimeoutException:
            error = OpenTimeout(data_dir, timeout_ms)
            logger.error(f"[VERIFY] {error}")
            self._emit(EventType.OPEN_TIMED_OUT, f"Open timed out after {timeout_ms}ms",
                       severity=EventSeverity.ERROR, context={'data_dir': str(data_dir)})
            return OpenResult(success=False, error=error, timed_out=True)
        except Exception as e:
            logger.error(f"[VERIFY] Open of {data_dir} failed: {type(e).__name__}: {e}")
            self._emit(EventType.OPEN_FAILED, f"Open failed: {e}", severity=EventSeverity.ERROR,
                       context={'data_dir': str(data_dir), 'error': type(e).__name__})
            return OpenResult(success=False, error=e)

        logger.info(f"[VERIFY] Opened {data_dir}")
        self._emit(EventType.OPEN_SUCCEEDED, "Open succeeded", context={'data_dir': str(data_dir)})
        return OpenResult(success=True, handle=handle)

    def verify_integrity(self, handle: EngineHandle) -> IntegrityReport:
        """
        Run the layered structural checks.

        Layers: a no-table query; the engine catalog; a count of every
        user table; a scan through every explicit index; the engine's own
        quick_check.

        A user database that lost its pages (truncated to 0 bytes, say)
        opens as a valid empty database. Only the missing catalog row
        tells it apart from a fresh one.
        """
        issues = []

        try:
            handle.query("SELECT 1 AS health_check")
        except sqlite3.Error as e:
            issues.append(f"Basic query failed: {e}")

        try:
            rows = handle.query(f"SELECT value FROM {quote_identifier(ENGINE_META_TABLE)} WHERE key = 'version'")
            if not rows:
                issues.append(f"Catalog: {ENGINE_META_TABLE} has no version row")
        except sqlite3.Error as e:
            issues.append(f"Catalog check failed: {e}")

        table_counts = {}
        try:
            tables = handle.query(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            for row in tables:
                table = row[0]
                try:
                    table_counts[table] = handle.query(
                        f"SELECT count(*) FROM {quote_identifier(table)}")[0][0]
                except sqlite3.Error as e:
                    issues.append(f"Count on {table} failed: {e}")
        except sqlite3.Error as e:
            issues.append(f"Table listing failed: {e}")

        try:
            indexes = handle.query(
                "SELECT name, tbl_name FROM sqlite_master WHERE type = 'index' "
                "AND sql IS NOT NULL ORDER BY name"
            )
            for row in indexes:
                issue = self._check_index(handle, row[0], row[1], table_counts.get(row[1]))
                if issue:
                    issues.append(issue)
        except sqlite3.Error as e:
            issues.append(f"Index listing failed: {e}")

        try:
            problems = [r[0] for r in handle.query("PRAGMA quick_check")]
            if problems != ['ok']:
                issues.extend(f"quick_check: {p}" for p in problems[:10])
        except sqlite3.Error as e:
            issues.append(f"quick_check failed: {e}")

        report = IntegrityReport(issues=tuple(issues))
        if report.intact:
            logger.info(f"[VERIFY] {handle.data_dir}: intact ({len(table_counts)} tables)")
        else:
            logger.warning(f"[VERIFY] {handle.data_dir}: {len(issues)} integrity issue(s)")
        self._emit(EventType.INTEGRITY_CHECKED,
                   "Integrity intact" if report.intact else f"{len(issues)} integrity issue(s)",
                   severity=EventSeverity.INFO if report.intact else EventSeverity.ERROR,
                   context={'data_dir': str(handle.data_dir), 'issues': list(issues)})
        return report

    def _check_index(self, handle: EngineHandle, index: str, table: str,
                     table_count: Optional[int]) -> Optional[str]:
        """Scan through one index; compare with the table count when the index is total."""
        try:
            partial = any(r['name'] == index and r['partial']
                          for r in handle.query(f"PRAGMA index_list({quote_identifier(table)})"))
            columns = handle.query(f"PRAGMA index_info({quote_identifier(index)})")
            column = columns[0]['name'] if columns else None
            if partial or column is None:
                # Partial or expression index: fall back to a query over the owning table
                handle.query(f"SELECT count(*) FROM {quote_identifier(table)}")
                return None

            indexed = handle.query(
                f"SELECT count(*) FROM (SELECT {quote_identifier(column)} "
                f"FROM {quote_identifier(table)} INDEXED BY {quote_identifier(index)} "
                f"ORDER BY {quote_identifier(column)})"
            )[0][0]
        except sqlite3.Error as e:
            return f"Index check on {index} failed: {e}"

        if table_count is not None and indexed != table_count:
            return f"Index {index} has {indexed} entries but {table} has {table_count} rows"
        return None

    def require_intact(self, handle: EngineHandle) -> IntegrityReport:
        """
        verify_integrity for callers that want an exception.

        Raises:
            IntegrityFailure: If any issue was found
        """
        report = self.verify_integrity(handle)
        if not report.intact:
            raise IntegrityFailure(handle.data_dir, report)
        return report

    # Scenario-specific checks

    @staticmethod
    def table_exists(handle: EngineHandle, table: str) -> bool:
        try:
            return bool(handle.query(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)))
        except sqlite3.Error:
            return False

    def reconcile_metadata(self, handle: EngineHandle, meta_table: str,
                           table_column: str = 'table_name', count_column: str = 'row_count',
                           where: str = '', params: Sequence = (), required: bool = False) -> CheckResult:
        """
        Compare row counts recorded by a worker against actual counts.

        Each metadata row names a table and how many rows the worker saw
        there before the kill point. ``where`` applies the same filter to
        both sides (for example ``cycle = ?``).
        """
        issues = []
        try:
            if not self.table_exists(handle, meta_table):
                if required:
                    issues.append(f"Metadata table {meta_table} is missing")
                return self._check_result('reconcile_metadata', CheckCategory.RECONCILIATION, issues)

            clause = f" WHERE {where}" if where else ''
            recorded = handle.query(
                f"SELECT {quote_identifier(table_column)}, {quote_identifier(count_column)} "
                f"FROM {quote_identifier(meta_table)}{clause}", params)
            for row in recorded:
                table, expected = row[0], row[1]
                actual = handle.query(f"SELECT count(*) FROM {quote_identifier(table)}{clause}", params)[0][0]
                if actual != expected:
                    issues.append(f"{table}: metadata records {expected} rows, found {actual}")
        except sqlite3.Error as e:
            issues.append(f"Metadata reconciliation failed: {e}")

        return self._check_result('reconcile_metadata', CheckCategory.RECONCILIATION, issues)

    def find_duplicate_keys(self, handle: EngineHandle, table: str, key_column: str) -> CheckResult:
        """Report key values that occur more than once."""
        issues = []
        try:
            duplicates = handle.query(
                f"SELECT {quote_identifier(key_column)}, count(*) FROM {quote_identifier(table)} "
                f"GROUP BY {quote_identifier(key_column)} HAVING count(*) > 1 LIMIT 10")
            issues.extend(f"{table}.{key_column} = {row[0]!r} appears {row[1]} times" for row in duplicates)
        except sqlite3.Error as e:
            issues.append(f"Duplicate check on {table} failed: {e}")
        return self._check_result(f'find_duplicate_keys:{table}', CheckCategory.DUPLICATES, issues)

    def scan_reconcile(self, handle: EngineHandle, table: str, order_by: str = 'rowid') -> CheckResult:
        """
        Compare an aggregate count with a literal ordered enumeration.

        Page-level damage can leave count(*) answering from intact interior
        pages while a full walk of the leaves fails or comes up short.
        """
        issues = []
        try:
            aggregate = handle.query(f"SELECT count(*) FROM {quote_identifier(table)}")[0][0]
            enumerated = 0
            cursor = handle.connection.execute(
                f"SELECT * FROM {quote_identifier(table)} ORDER BY {order_by}")
            try:
                for _ in cursor:
                    enumerated += 1
            finally:
                cursor.close()
            if enumerated != aggregate:
                issues.append(f"{table}: count(*) = {aggregate} but enumeration returned {enumerated} rows")
        except sqlite3.Error as e:
            issues.append(f"Scan of {table} failed: {e}")
        return self._check_result(f'scan_reconcile:{table}', CheckCategory.SCAN, issues)

    def expect_row_count(self, handle: EngineHandle, table: str, expected: Union[int, Sequence[int]],
                         where: str = '', params: Sequence = ()) -> CheckResult:
        """
        Check that a table (optionally filtered) holds the expected number
        of rows. A sequence of counts accepts any of them (for example an
        all-or-nothing batch); a range accepts any count inside it.
        """
        issues = []
        clause = f" WHERE {where}" if where else ''
        allowed = (expected,) if isinstance(expected, int) else expected
        try:
            actual = handle.query(f"SELECT count(*) FROM {quote_identifier(table)}{clause}", params)[0][0]
            if actual not in allowed:
                label = f"{table}{clause}"
                if isinstance(allowed, range):
                    wanted = f"{allowed.start} to {allowed.stop - 1}"
                elif len(allowed) == 1:
                    wanted = allowed[0]
                else:
                    wanted = ' or '.join(str(a) for a in allowed)
                issues.append(f"{label}: expected {wanted} rows, found {actual}")
        except sqlite3.Error as e:
            issues.append(f"Row count on {table} failed: {e}")
        return self._check_result(f'expect_row_count:{table}', CheckCategory.RECONCILIATION, issues)

    def expect_columns(self, handle: EngineHandle, table: str, required: Sequence[str],
                       any_of: Sequence[Sequence[str]] = ()) -> CheckResult:
        """
        Check the columns of a table after an interrupted schema change.

        Every name in ``required`` must be present. From each group in
        ``any_of`` at least one name must be, for a column that may or may
        not have been renamed before the kill.
        """
        issues = []
        try:
            present = {r['name'] for r in handle.query(f"PRAGMA table_info({quote_identifier(table)})")}
            if not present:
                issues.append(f"{table}: table is missing")
            else:
                issues.extend(f"{table}: column {c} is missing" for c in required if c not in present)
                for group in any_of:
                    if not present.intersection(group):
                        issues.append(f"{table}: none of {', '.join(group)} present")
        except sqlite3.Error as e:
            issues.append(f"Column check on {table} failed: {e}")
        return self._check_result(f'expect_columns:{table}', CheckCategory.SCHEMA, issues)

    def table_write_probe(self, handle: EngineHandle, table: str, row: Dict[str, Any]) -> CheckResult:
        """
        Insert one row into an existing table, count it, roll it back.

        Proves a table that lived through the crash still takes writes,
        without changing its contents.
        """
        issues = []
        target = quote_identifier(table)
        columns = ', '.join(quote_identifier(c) for c in row)
        marks = ', '.join('?' for _ in row)
        try:
            before = handle.query(f"SELECT count(*) FROM {target}")[0][0]
            handle.query("SAVEPOINT crashguard_table_probe")
            try:
                handle.query(f"INSERT INTO {target} ({columns}) VALUES ({marks})", tuple(row.values()))
                after = handle.query(f"SELECT count(*) FROM {target}")[0][0]
                if after != before + 1:
                    issues.append(f"{table}: {after} rows after inserting into {before}")
            finally:
                handle.query("ROLLBACK TO crashguard_table_probe")
                handle.query("RELEASE crashguard_table_probe")
        except sqlite3.Error as e:
            issues.append(f"Write into {table} failed: {e}")
        return self._check_result(f'table_write_probe:{table}', CheckCategory.WRITE_PROBE, issues)

    def write_probe(self, handle: EngineHandle) -> CheckResult:
        """
        Prove the directory is writable: create, insert, read back, drop.

        The probe table is dropped again on every path, so repeated
        verification leaves the directory unchanged.
        """
        issues = []
        table = quote_identifier(PROBE_TABLE)
        try:
            handle.query(f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, value TEXT)")
            handle.query(f"INSERT INTO {table} (value) VALUES (?)", ('probe',))
            rows = handle.query(f"SELECT value FROM {table}")
            if [r[0] for r in rows] != ['probe']:
                issues.append(f"Write probe read back {len(rows)} unexpected row(s)")
            handle.query(f"DELETE FROM {table}")
        except sqlite3.Error as e:
            issues.append(f"Write probe failed: {e}")
        finally:
            try:
                handle.query(f"DROP TABLE IF EXISTS {table}")
            except sqlite3.Error as e:
                issues.append(f"Write probe cleanup failed: {e}")
        return self._check_result('write_probe', CheckCategory.WRITE_PROBE, issues)

    def _check_result(self, name: str, category: CheckCategory, issues: list) -> CheckResult:
        result = CheckResult(name=name, category=category, issues=tuple(issues))
        if not result.passed:
            logger.warning(f"[VERIFY] Check {name} failed: {'; '.join(issues)}")
            self._emit(EventType.CHECK_FAILED, f"Check {name} failed", severity=EventSeverity.WARNING,
                       context={'check': name, 'category': category.value, 'issues': issues})
        return result

    def _emit(self, event_type: EventType, message: str,
              severity: EventSeverity = EventSeverity.INFO, context: Optional[dict] = None):
        if self.emitter is not None:
            self.emitter.emit(event_type, message, severity=severity, context=context)
