"""
Table layout shared by the SQL record stores, plus helpers that turn
filter/value mappings into parameterised statements.

Only column names listed here ever reach SQL text; values are always bound
as parameters.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence, Tuple

TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "users": ("username", "display_name", "ip_address", "password_record", "balance"),
    "tokens": ("id", "worth", "revert_tag", "creator_username"),
}

Statement = Tuple[str, List[Any]]


def _columns(table: str) -> Tuple[str, ...]:
    try:
        return TABLE_COLUMNS[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


def _check_columns(table: str, names: Sequence[str]) -> None:
    known = _columns(table)
    unknown = [name for name in names if name not in known]
    if unknown:
        raise ValueError(f"Unknown column(s) for {table}: {unknown}")


def _where(table: str, filters: Mapping[str, Any], placeholder: str) -> Statement:
    names = list(filters)
    _check_columns(table, names)
    if not names:
        return "", []
    clause = " AND ".join(f"{name} = {placeholder}" for name in names)
    return f" WHERE {clause}", [filters[name] for name in names]


def build_insert(table: str, values: Mapping[str, Any], placeholder: str) -> Statement:
    names = list(values)
    _check_columns(table, names)
    if not names:
        raise ValueError("Cannot insert an empty row")
    marks = ", ".join(placeholder for _ in names)
    sql = f"INSERT INTO {table} ({', '.join(names)}) VALUES ({marks})"
    return sql, [values[name] for name in names]


def build_select(
    table: str,
    filters: Mapping[str, Any],
    placeholder: str,
    limit: int = 0,
) -> Statement:
    where, params = _where(table, filters, placeholder)
    sql = f"SELECT {', '.join(_columns(table))} FROM {table}{where}"
    if limit:
        sql += f" LIMIT {int(limit)}"
    return sql, params


def build_update(
    table: str,
    filters: Mapping[str, Any],
    values: Mapping[str, Any],
    placeholder: str,
) -> Statement:
    if not filters:
        raise ValueError("Refusing to update without a filter")
    names = list(values)
    _check_columns(table, names)
    if not names:
        raise ValueError("Nothing to update")
    assignments = ", ".join(f"{name} = {placeholder}" for name in names)
    where, where_params = _where(table, filters, placeholder)
    sql = f"UPDATE {table} SET {assignments}{where}"
    return sql, [values[name] for name in names] + where_params


def build_delete(table: str, filters: Mapping[str, Any], placeholder: str) -> Statement:
    if not filters:
        raise ValueError("Refusing to delete without a filter")
    where, params = _where(table, filters, placeholder)
    return f"DELETE FROM {table}{where}", params
