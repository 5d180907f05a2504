"""Translate query models into parameterised SQLite statements."""

from __future__ import annotations

import datetime
import json
from typing import Any, Dict, List, Sequence, Tuple

from ..exceptions import StoreError
from ..utils.validators import quote_identifier
from .models import Column, Order, Table

SQL_TYPES = {
    "string": "TEXT",
    "number": "NUMERIC",
    "boolean": "INTEGER",
    "object": "TEXT",
    "array": "TEXT",
    "date_time": "TEXT",
}

COMPARISONS = {"<": "<", "<=": "<=", ">": ">", ">=": ">=", "!=": "!=", "like": "LIKE"}

Fragment = Tuple[str, List[Any]]

TABLE_NOT_EXIST = "table_not_exist"
COLUMN_NOT_EXIST = "column_not_exist"
INVALID_QUERY = "invalid_query"


def encode(column: Column, value: Any) -> Any:
    if value is None:
        return None
    if column.data_type == "boolean":
        return int(bool(value))
    if column.data_type in ("object", "array"):
        return json.dumps(value, default=str)
    if column.data_type == "date_time" and isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


def decode(column: Column, value: Any) -> Any:
    if value is None:
        return None
    if column.data_type == "boolean":
        return bool(value)
    if column.data_type in ("object", "array"):
        return json.loads(value)
    if column.data_type == "date_time" and isinstance(value, str):
        try:
            return datetime.datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def decode_row(table: Table, row: Any) -> Dict[str, Any]:
    out = {}
    for key in row.keys():
        column = table.column(key)
        out[key] = decode(column, row[key]) if column is not None else row[key]
    return out


def column_ddl(column: Column) -> str:
    parts = [quote_identifier(column.name)]
    if column.auto_increment:
        if not column.primary_key:
            raise StoreError(INVALID_QUERY, f"auto_increment column {column.name} must be the primary key")
        parts.append("INTEGER PRIMARY KEY AUTOINCREMENT")
    else:
        parts.append(SQL_TYPES[column.data_type])
        if column.primary_key:
            parts.append("PRIMARY KEY")
    if column.not_null:
        parts.append("NOT NULL")
    if column.unique:
        parts.append("UNIQUE")
    return " ".join(parts)


def create_table_sql(table: Table) -> str:
    columns = ", ".join(column_ddl(c) for c in table.columns)
    return f"CREATE TABLE IF NOT EXISTS {quote_identifier(table.name)} ({columns})"


def drop_table_sql(table: Table) -> str:
    return f"DROP TABLE IF EXISTS {quote_identifier(table.name)}"


def require_column(table: Table, name: str) -> Column:
    column = table.column(name)
    if column is None:
        raise StoreError(COLUMN_NOT_EXIST, f"column {name} does not exist in table {table.name}")
    return column


def build_where(table: Table, where: Any) -> Fragment:
    """Return ``(" WHERE ...", params)``, or an empty fragment for no filter."""
    if where is None:
        return "", []
    sql, params = _clause(table, where)
    return f" WHERE {sql}", params


def _clause(table: Table, where: Any) -> Fragment:
    if isinstance(where, list):
        if not where:
            raise StoreError(INVALID_QUERY, "empty where list")
        parts = [_clause(table, w) for w in where]
        return "(" + " OR ".join(sql for sql, _ in parts) + ")", [p for _, ps in parts for p in ps]
    if not isinstance(where, dict) or not where:
        raise StoreError(INVALID_QUERY, f"invalid where clause: {where!r}")

    conditions: List[str] = []
    params: List[Any] = []
    alternative = None
    for key, value in where.items():
        if key == "or":
            alternative = _clause(table, value)
            continue
        column = require_column(table, key)
        name = quote_identifier(key)
        if isinstance(value, dict) and column.data_type != "object":
            for op, operand in value.items():
                sql, ps = _comparison(column, name, op, operand)
                conditions.append(sql)
                params.extend(ps)
        elif value is None:
            conditions.append(f"{name} IS NULL")
        else:
            conditions.append(f"{name} = ?")
            params.append(encode(column, value))

    sql = " AND ".join(conditions)
    if alternative is not None:
        if sql:
            sql = f"(({sql}) OR {alternative[0]})"
        else:
            sql = alternative[0]
        params.extend(alternative[1])
    elif len(conditions) > 1:
        sql = f"({sql})"
    return sql, params


def _comparison(column: Column, name: str, op: str, operand: Any) -> Fragment:
    if op in COMPARISONS:
        value = operand if op == "like" else encode(column, operand)
        return f"{name} {COMPARISONS[op]} ?", [value]
    if op == "in":
        if not isinstance(operand, (list, tuple, set)) or not operand:
            raise StoreError(INVALID_QUERY, f"'in' on {column.name} needs a non-empty list")
        marks = ", ".join("?" for _ in operand)
        return f"{name} IN ({marks})", [encode(column, v) for v in operand]
    if op == "between":
        if not isinstance(operand, (list, tuple)) or len(operand) != 2:
            raise StoreError(INVALID_QUERY, f"'between' on {column.name} needs [low, high]")
        return f"{name} BETWEEN ? AND ?", [encode(column, operand[0]), encode(column, operand[1])]
    raise StoreError(INVALID_QUERY, f"unknown operator {op!r} on {column.name}")


def build_order(table: Table, order: Any) -> str:
    if order is None:
        return ""
    orders: Sequence[Order] = order if isinstance(order, list) else [order]
    parts = []
    for o in orders:
        require_column(table, o.by)
        parts.append(f"{quote_identifier(o.by)} {o.type.upper()}")
    return " ORDER BY " + ", ".join(parts) if parts else ""


def build_paging(limit: Any, skip: Any) -> Fragment:
    if limit is None and not skip:
        return "", []
    # SQLite needs a LIMIT before OFFSET; -1 means no limit.
    sql = " LIMIT ?"
    params: List[Any] = [limit if limit is not None else -1]
    if skip:
        sql += " OFFSET ?"
        params.append(skip)
    return sql, params
