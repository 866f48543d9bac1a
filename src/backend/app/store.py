"""Data store adapters.

Services talk to persistence through ``DataStore``: filtered select, insert,
update, delete and named server-side procedures. ``SupabaseStore`` is the
production adapter (PostgREST over httpx); ``SqlStore`` runs the same
contract on SQLAlchemy for local development and tests.
"""
import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
import uuid

import httpx
from sqlalchemy import delete as sa_delete, func, insert as sa_insert, select, update as sa_update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import Base
from .errors import StoreError

logger = logging.getLogger(__name__)

FILTER_OPS = ("eq", "neq", "gt", "gte", "lt", "lte")


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


@dataclass
class SelectResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None


class DataStore:
    def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        count: bool = False,
    ) -> SelectResult:
        raise NotImplementedError

    def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, values: Mapping[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, table: str, filters: Sequence[Filter]) -> int:
        raise NotImplementedError

    def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        raise NotImplementedError


# --------------------------- Supabase (PostgREST) ---------------------------
def _pg_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filter_params(filters: Sequence[Filter]) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    for f in filters:
        if f.value is None and f.op in ("eq", "neq"):
            params.append((f.column, "is.null" if f.op == "eq" else "not.is.null"))
        else:
            params.append((f.column, f"{f.op}.{_pg_value(f.value)}"))
    return params


def _parse_content_range(header: str) -> Optional[int]:
    # "0-49/120" or "*/0"
    try:
        total = header.rsplit("/", 1)[1]
        return None if total == "*" else int(total)
    except (IndexError, ValueError):
        return None


class SupabaseStore(DataStore):
    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        if not url or not service_key:
            raise StoreError("supabase_not_configured")
        self._rest = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _send(
        self,
        method: str,
        path: str,
        target: str,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            r = self._client.request(method, f"{self._rest}/{path}", params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("supabase_request_failed", extra={"method": method, "target": target, "error": str(exc)})
            raise StoreError(f"supabase request failed: {exc}", target=target) from exc
        if r.status_code >= 400:
            try:
                body = r.json()
                detail = body.get("message") or body.get("hint") or str(body)
            except ValueError:
                detail = r.text[:200]
            logger.warning(
                "supabase_request_rejected",
                extra={"method": method, "target": target, "status": r.status_code, "detail": detail},
            )
            raise StoreError(f"supabase rejected {method} {target}: {detail}", status_code=r.status_code, target=target)
        return r

    def select(self, table, filters=(), order_by=None, descending=False, limit=None, offset=None, count=False):
        params: List[Tuple[str, str]] = [("select", "*")]
        params.extend(_filter_params(filters))
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        if offset:
            params.append(("offset", str(int(offset))))
        r = self._send("GET", table, table, params=params, prefer="count=exact" if count else None)
        rows = r.json() or []
        total = _parse_content_range(r.headers.get("content-range", "")) if count else None
        return SelectResult(rows=rows, count=total)

    def insert(self, table, row):
        r = self._send("POST", table, table, json=dict(row), prefer="return=representation")
        rows = r.json() or []
        return rows[0] if rows else dict(row)

    def update(self, table, values, filters):
        r = self._send("PATCH", table, table, params=_filter_params(filters), json=dict(values), prefer="return=representation")
        return r.json() or []

    def delete(self, table, filters):
        r = self._send("DELETE", table, table, params=_filter_params(filters), prefer="return=representation")
        return len(r.json() or [])

    def rpc(self, name, params=None):
        r = self._send("POST", f"rpc/{name}", name, json=dict(params or {}))
        if r.status_code == 204 or not r.content:
            return None
        return r.json()


# --------------------------- SQLAlchemy ---------------------------
Procedure = Callable[[Connection, Mapping[str, Any]], Any]

_OPS = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}


class SqlStore(DataStore):
    def __init__(self, engine: Engine, procedures: Optional[Mapping[str, Procedure]] = None):
        from .procedures import PROCEDURES

        self.engine = engine
        self._procedures: Dict[str, Procedure] = dict(PROCEDURES)
        if procedures:
            self._procedures.update(procedures)

    def _table(self, name: str):
        tbl = Base.metadata.tables.get(name)
        if tbl is None:
            raise StoreError("unknown table", target=name)
        return tbl

    def _column(self, tbl, name: str):
        if name not in tbl.c:
            raise StoreError(f"unknown column {name}", target=tbl.name)
        return tbl.c[name]

    def _where(self, tbl, filters: Sequence[Filter]) -> list:
        conds = []
        for f in filters:
            col = self._column(tbl, f.column)
            if f.value is None and f.op == "eq":
                conds.append(col.is_(None))
            elif f.value is None and f.op == "neq":
                conds.append(col.is_not(None))
            else:
                conds.append(_OPS[f.op](col, f.value))
        return conds

    def select(self, table, filters=(), order_by=None, descending=False, limit=None, offset=None, count=False):
        tbl = self._table(table)
        conds = self._where(tbl, filters)
        stmt = select(tbl).where(*conds)
        if order_by:
            col = self._column(tbl, order_by)
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if limit is not None:
            stmt = stmt.limit(int(limit))
        if offset:
            stmt = stmt.offset(int(offset))
        try:
            with self.engine.connect() as conn:
                rows = [dict(r._mapping) for r in conn.execute(stmt)]
                total = None
                if count:
                    total = int(conn.execute(select(func.count()).select_from(tbl).where(*conds)).scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"select failed: {exc}", target=table) from exc
        return SelectResult(rows=rows, count=total)

    def insert(self, table, row):
        tbl = self._table(table)
        values = dict(row)
        for key in values:
            self._column(tbl, key)
        values.setdefault("id", str(uuid.uuid4()))
        try:
            with self.engine.begin() as conn:
                conn.execute(sa_insert(tbl).values(**values))
                created = conn.execute(select(tbl).where(tbl.c.id == values["id"])).one()
        except SQLAlchemyError as exc:
            raise StoreError(f"insert failed: {exc}", target=table) from exc
        return dict(created._mapping)

    def update(self, table, values, filters):
        tbl = self._table(table)
        for key in values:
            self._column(tbl, key)
        conds = self._where(tbl, filters)
        try:
            with self.engine.begin() as conn:
                ids = [r[0] for r in conn.execute(select(tbl.c.id).where(*conds))]
                if not ids:
                    return []
                conn.execute(sa_update(tbl).where(tbl.c.id.in_(ids)).values(**dict(values)))
                rows = conn.execute(select(tbl).where(tbl.c.id.in_(ids)))
                return [dict(r._mapping) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"update failed: {exc}", target=table) from exc

    def delete(self, table, filters):
        tbl = self._table(table)
        conds = self._where(tbl, filters)
        try:
            with self.engine.begin() as conn:
                return int(conn.execute(sa_delete(tbl).where(*conds)).rowcount or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"delete failed: {exc}", target=table) from exc

    def rpc(self, name, params=None):
        proc = self._procedures.get(name)
        if proc is None:
            raise StoreError("unknown procedure", target=name)
        try:
            with self.engine.begin() as conn:
                return proc(conn, dict(params or {}))
        except SQLAlchemyError as exc:
            raise StoreError(f"procedure failed: {exc}", target=name) from exc
