# apps/listflow/tests/fakes.py
"""
In-memory stand-in for the supabase-py client.

Covers the query-builder surface the app uses (select/eq/in_/ilike/order/
limit/range plus insert/update/upsert/delete). Tables listed in `schema`
reject unknown columns the way PostgREST does, so the column-fallback paths
run against it; tables in `missing_tables` behave like an absent relation.
"""
import copy
import re
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError


def _missing_column(table: str, column: str) -> APIError:
    return APIError({"message": f"column {table}.{column} does not exist", "code": "42703"})


def _missing_table(table: str) -> APIError:
    return APIError({"message": f'relation "public.{table}" does not exist', "code": "42P01"})


def _duplicate(table: str) -> APIError:
    return APIError(
        {"message": f'duplicate key value violates unique constraint "{table}_key"', "code": "23505"}
    )


def _same(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    return a == b or str(a) == str(b)


def _like(pattern: str) -> "re.Pattern[str]":
    parts = [re.escape(p) for p in pattern.split("%")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


class FakeResponse:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data
        self.count = len(data)


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.columns: Optional[List[str]] = None
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.filter_columns: List[str] = []
        self.orders: List[tuple] = []
        self._limit: Optional[int] = None
        self._range: Optional[tuple] = None

    # -------------------------
    # Operations
    # -------------------------
    def select(self, columns: str = "*", **_: Any) -> "FakeQuery":
        if self.op == "select":
            cols = [c.strip() for c in columns.split(",") if c.strip()]
            self.columns = None if cols == ["*"] else cols
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload: Dict[str, Any]) -> "FakeQuery":
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload: Any, on_conflict: str = "id", **_: Any) -> "FakeQuery":
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self) -> "FakeQuery":
        self.op = "delete"
        return self

    # -------------------------
    # Filters / modifiers
    # -------------------------
    def _filter(self, column: str, fn: Callable[[Dict[str, Any]], bool]) -> "FakeQuery":
        self.filter_columns.append(column)
        self.filters.append(fn)
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, lambda row: _same(row.get(column), value))

    def neq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, lambda row: not _same(row.get(column), value))

    def in_(self, column: str, values: Iterable[Any]) -> "FakeQuery":
        values = list(values)
        return self._filter(column, lambda row: any(_same(row.get(column), v) for v in values))

    def ilike(self, column: str, pattern: str) -> "FakeQuery":
        regex = _like(pattern)
        return self._filter(column, lambda row: isinstance(row.get(column), str) and bool(regex.match(row[column])))

    def order(self, column: str, desc: bool = False, **_: Any) -> "FakeQuery":
        self.orders.append((column, desc))
        return self

    def limit(self, n: int, **_: Any) -> "FakeQuery":
        self._limit = n
        return self

    def range(self, start: int, end: int, **_: Any) -> "FakeQuery":
        self._range = (start, end)
        return self

    # -------------------------
    # Execution
    # -------------------------
    def _check_columns(self, columns: Iterable[str]) -> None:
        known = self.db.schema.get(self.table)
        if known is None:
            return
        for column in columns:
            if column not in known:
                raise _missing_column(self.table, column)

    def _matching(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [row for row in rows if all(fn(row) for fn in self.filters)]

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = list(rows)
        for column, desc in reversed(self.orders):
            present = [r for r in out if r.get(column) is not None]
            absent = [r for r in out if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=desc)
            # PostgREST puts NULLs first on DESC, last on ASC.
            out = absent + present if desc else present + absent
        return out

    def _project(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self.columns is None:
            return copy.deepcopy(row)
        return {c: copy.deepcopy(row.get(c)) for c in self.columns}

    def _prepare_insert(self, row: Dict[str, Any], rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        self._check_columns(row.keys())
        new = copy.deepcopy(row)
        known = self.db.schema.get(self.table)
        if "id" not in new and (known is None or "id" in known):
            new["id"] = str(uuid.uuid4())
        if "created_at" not in new and (known is None or "created_at" in known):
            new["created_at"] = datetime.now(timezone.utc).isoformat()
        for constraint in self.db.unique.get(self.table, ()):
            if all(new.get(c) is not None for c in constraint) and any(
                all(_same(existing.get(c), new.get(c)) for c in constraint) for existing in rows
            ):
                raise _duplicate(self.table)
        return new

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table, self.op, copy.deepcopy(self.payload)))
        if self.table in self.db.missing_tables:
            raise _missing_table(self.table)
        error = self.db.errors.get((self.table, self.op))
        if error is not None:
            raise error

        self._check_columns(self.filter_columns)
        self._check_columns(c for c, _ in self.orders)
        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "select":
            self._check_columns(self.columns or [])
            result = self._sorted(self._matching(rows))
            if self._range is not None:
                result = result[self._range[0]: self._range[1] + 1]
            if self._limit is not None:
                result = result[: self._limit]
            return FakeResponse([self._project(r) for r in result])

        if self.op == "insert":
            payloads = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for payload in payloads:
                new = self._prepare_insert(payload, rows)
                rows.append(new)
                inserted.append(copy.deepcopy(new))
            return FakeResponse(inserted)

        if self.op == "update":
            self._check_columns(self.payload.keys())
            updated = []
            for row in self._matching(rows):
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        if self.op == "upsert":
            self._check_columns(self.payload.keys())
            key = self.on_conflict
            for row in rows:
                if _same(row.get(key), self.payload.get(key)):
                    row.update(copy.deepcopy(self.payload))
                    return FakeResponse([copy.deepcopy(row)])
            new = self._prepare_insert(self.payload, rows)
            rows.append(new)
            return FakeResponse([copy.deepcopy(new)])

        if self.op == "delete":
            removed = self._matching(rows)
            self.db.tables[self.table] = [r for r in rows if r not in removed]
            return FakeResponse([copy.deepcopy(r) for r in removed])

        raise AssertionError(f"unsupported op {self.op}")


class FakeAuth:
    def __init__(self):
        self.tokens: Dict[str, Dict[str, Any]] = {}

    def get_user(self, token: str):
        user = self.tokens.get(token)
        if not user:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=user["id"], email=user.get("email")))


class FakeSupabase:
    def __init__(
        self,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        schema: Optional[Dict[str, Iterable[str]]] = None,
        missing_tables: Iterable[str] = (),
        unique: Optional[Dict[str, List[tuple]]] = None,
    ):
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables or {})
        self.schema: Dict[str, set] = {name: set(cols) for name, cols in (schema or {}).items()}
        self.missing_tables = set(missing_tables)
        self.unique: Dict[str, List[tuple]] = unique or {}
        self.errors: Dict[tuple, APIError] = {}
        self.calls: List[tuple] = []
        self.auth = FakeAuth()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    # -------------------------
    # Test helpers
    # -------------------------
    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def add_user(self, token: str, user_id: str, email: str = "user@example.com", role: Optional[str] = None) -> None:
        self.auth.tokens[token] = {"id": user_id, "email": email}
        self.tables.setdefault("profiles", []).append(
            {"user_id": user_id, "email": email, "role": role or "user", "full_name": "Test User"}
        )

    def writes(self, table: str, op: str) -> List[Any]:
        return [payload for t, o, payload in self.calls if t == table and o == op]
