from __future__ import annotations

import json
import math
import sqlite3
import types
import uuid
from dataclasses import fields
from pathlib import Path
from typing import Any, Generic, TypeVar, Union, get_args, get_origin, get_type_hints

from .errors import InvalidRecordError, RecordNotFoundError, StaleRecordError
from .models import (
    LITERAL_FIELDS,
    Account,
    AdvancedOrder,
    AutoTrade,
    LogEntry,
    ModelConfig,
    PerformanceReport,
    PortfolioPosition,
    PressureRecord,
    Quote,
    SemanticPressure,
    Signal,
    TradeRecord,
)
from .settings import settings


T = TypeVar("T")

_SQL_TYPES = {"float": "REAL", "int": "INTEGER", "bool": "INTEGER", "json": "TEXT", "text": "TEXT"}


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    db_path = Path(db_path or settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_type: str) -> None:
    info = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing = {row[1] for row in info}
    if column_name in existing:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")


def _column_kind(hint: Any) -> tuple[str, bool]:
    optional = False
    if get_origin(hint) in (Union, types.UnionType):
        args = get_args(hint)
        optional = type(None) in args
        hint = next(arg for arg in args if arg is not type(None))
    origin = get_origin(hint) or hint
    if origin in (list, dict):
        return "json", optional
    if origin is bool:
        return "bool", optional
    if origin is int:
        return "int", optional
    if origin is float:
        return "float", optional
    return "text", optional


class Repository(Generic[T]):
    """Typed table over one record dataclass.

    Records are keyed by a string ``id`` and carry a ``version`` that is bumped
    on every update, so callers can do compare-and-set writes by passing
    ``expected_version``.  Values are decoded leniently: a NULL stored in a
    non-optional float column comes back as NaN instead of failing, which lets
    the ledger checks see and repair corrupted rows.
    """

    def __init__(self, record_type: type[T], table: str, db_path: Path | None = None) -> None:
        self.record_type = record_type
        self.table = table
        self.db_path = Path(db_path or settings.db_path)
        hints = self._hints = get_type_hints(record_type)
        self._columns: dict[str, tuple[str, bool]] = {
            item.name: _column_kind(hints[item.name]) for item in fields(record_type)
        }
        self._literals = LITERAL_FIELDS.get(record_type, {})

    # ── Schema ──────────────────────────────────────────────────

    def create_table(self) -> None:
        data_columns = [
            f"{name} {_SQL_TYPES[kind]}"
            for name, (kind, _) in self._columns.items()
            if name not in ("id", "version")
        ]
        ddl = (
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "id TEXT PRIMARY KEY, version INTEGER NOT NULL DEFAULT 0, "
            + ", ".join(data_columns)
            + ")"
        )
        with get_connection(self.db_path) as conn:
            conn.execute(ddl)
            for name, (kind, _) in self._columns.items():
                _ensure_column(conn, self.table, name, _SQL_TYPES[kind])
            conn.commit()

    # ── Encoding ────────────────────────────────────────────────

    def _validate(self, values: dict[str, Any]) -> None:
        unknown = set(values) - set(self._columns)
        if unknown:
            raise InvalidRecordError(f"{self.table}: unknown fields {sorted(unknown)}")
        for name, allowed in self._literals.items():
            if name in values and values[name] not in allowed:
                raise InvalidRecordError(f"{self.table}.{name} must be one of {allowed}, got {values[name]!r}")

    def _encode(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        kind, _ = self._columns[name]
        if kind == "json":
            return json.dumps(value)
        if kind == "bool":
            return int(bool(value))
        return value

    def _decode(self, name: str, value: Any) -> Any:
        kind, optional = self._columns[name]
        if value is None:
            if optional:
                return None
            if kind == "float":
                return math.nan
            if kind in ("int", "bool"):
                return 0 if kind == "int" else False
            if kind == "json":
                return [] if get_origin(self._hints[name]) is list else {}
            return ""
        if kind == "json":
            return json.loads(value)
        if kind == "bool":
            return bool(value)
        if kind == "float":
            return float(value)
        return value

    def _from_row(self, row: sqlite3.Row) -> T:
        values = {name: self._decode(name, row[name]) for name in self._columns}
        return self.record_type(**values)

    def _where(self, criteria: dict[str, Any]) -> tuple[str, list[Any]]:
        self._validate_names(criteria)
        clauses: list[str] = []
        params: list[Any] = []
        for name, expected in criteria.items():
            if expected is None:
                clauses.append(f"{name} IS NULL")
            elif isinstance(expected, (list, tuple, set)):
                items = list(expected)
                if not items:
                    clauses.append("0")
                    continue
                clauses.append(f"{name} IN ({', '.join('?' for _ in items)})")
                params.extend(self._encode(name, item) for item in items)
            else:
                clauses.append(f"{name} = ?")
                params.append(self._encode(name, expected))
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def _validate_names(self, names: dict[str, Any]) -> None:
        unknown = set(names) - set(self._columns)
        if unknown:
            raise InvalidRecordError(f"{self.table}: unknown fields {sorted(unknown)}")

    # ── Public API ──────────────────────────────────────────────

    def create(self, record: T) -> T:
        values = {item.name: getattr(record, item.name) for item in fields(self.record_type)}
        values["id"] = values.get("id") or uuid.uuid4().hex
        values["version"] = 0
        self._validate(values)
        names = list(values)
        sql = f"INSERT INTO {self.table} ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})"
        with get_connection(self.db_path) as conn:
            conn.execute(sql, [self._encode(name, values[name]) for name in names])
            conn.commit()
        return self.record_type(**values)

    def get(self, record_id: str) -> T | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (record_id,)).fetchone()
        return self._from_row(row) if row is not None else None

    def require(self, record_id: str) -> T:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"{self.table}:{record_id} not found")
        return record

    def update(
        self,
        record_id: str,
        changes: dict[str, Any] | None = None,
        expected_version: int | None = None,
        **extra: Any,
    ) -> T:
        values = {**(changes or {}), **extra}
        values.pop("id", None)
        values.pop("version", None)
        self._validate(values)
        assignments = [f"{name} = ?" for name in values] + ["version = version + 1"]
        params = [self._encode(name, value) for name, value in values.items()]
        sql = f"UPDATE {self.table} SET {', '.join(assignments)} WHERE id = ?"
        params.append(record_id)
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)

        with get_connection(self.db_path) as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            updated = cursor.rowcount

        if updated == 0:
            if expected_version is not None and self.get(record_id) is not None:
                raise StaleRecordError(self.table, record_id, expected_version)
            raise RecordNotFoundError(f"{self.table}:{record_id} not found")
        return self.require(record_id)

    def delete(self, record_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,))
            conn.commit()
            return cursor.rowcount > 0

    def filter(
        self,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        **criteria: Any,
    ) -> list[T]:
        where, params = self._where(criteria)
        if order_by is not None:
            self._validate_names({order_by: None})
        order_column = order_by or "rowid"
        sql = f"SELECT * FROM {self.table}{where} ORDER BY {order_column} {'DESC' if descending else 'ASC'}"
        if order_by is not None:
            sql += f", rowid {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with get_connection(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def list(self, limit: int | None = None) -> list[T]:
        return self.filter(limit=limit)

    def first(self, **criteria: Any) -> T | None:
        found = self.filter(limit=1, **criteria)
        return found[0] if found else None

    def latest(self, symbol: str | None = None, **criteria: Any) -> T | None:
        if symbol is not None:
            criteria["symbol"] = symbol
        found = self.filter(descending=True, limit=1, **criteria)
        return found[0] if found else None

    def count(self, **criteria: Any) -> int:
        where, params = self._where(criteria)
        with get_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {self.table}{where}", params).fetchone()
        return int(row[0])


class Store:
    """One repository per record type, sharing a single sqlite file."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or settings.db_path)
        self.quotes = Repository(Quote, "quotes", self.db_path)
        self.pressure = Repository(PressureRecord, "pressure_records", self.db_path)
        self.semantic = Repository(SemanticPressure, "semantic_pressure", self.db_path)
        self.signals = Repository(Signal, "signals", self.db_path)
        self.orders = Repository(AdvancedOrder, "advanced_orders", self.db_path)
        self.auto_trades = Repository(AutoTrade, "auto_trades", self.db_path)
        self.accounts = Repository(Account, "accounts", self.db_path)
        self.positions = Repository(PortfolioPosition, "portfolio_positions", self.db_path)
        self.trades = Repository(TradeRecord, "trade_records", self.db_path)
        self.events = Repository(LogEntry, "event_log", self.db_path)
        self.model_configs = Repository(ModelConfig, "model_configs", self.db_path)
        self.reports = Repository(PerformanceReport, "performance_reports", self.db_path)

    def repositories(self) -> list[Repository]:
        return [value for value in vars(self).values() if isinstance(value, Repository)]

    def initialize(self) -> "Store":
        for repository in self.repositories():
            repository.create_table()
        return self


def initialize_database(db_path: Path | None = None) -> Store:
    return Store(db_path).initialize()
