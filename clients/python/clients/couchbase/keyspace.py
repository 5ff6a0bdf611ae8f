import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions, ReplaceOptions
from couchbase.result import GetResult, MutationResult
from pydantic_core import to_jsonable_python

from .config import get_cluster, DEFAULT_BUCKET_NAME, DEFAULT_SCOPE_NAME

# A condition is either (field, op, value) or ("OR", [alternatives...]) where
# each alternative is a single condition or a list of conditions ANDed together.
Condition = Tuple[str, str, Any]

COMPARISON_OPS = ("=", "!=", "<", "<=", ">", ">=")
SUPPORTED_OPS = COMPARISON_OPS + ("IN", "NOT IN", "ICONTAINS", "ANY_ICONTAINS")


def field_expr(field: str) -> str:
    """Render a (possibly dotted) document field as a N1QL expression."""
    if field == "id":
        return "META().id"
    return ".".join(f"`{part}`" for part in field.split("."))


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def build_where(conditions: Optional[Sequence], params: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """Translate structured conditions into a N1QL predicate plus named parameters.

    Conditions are ANDed together. Datetime values are compared in epoch
    milliseconds so ISO strings with different precision order correctly.
    """
    if params is None:
        params = {}
    if not conditions:
        return "TRUE", params

    clauses = []
    for condition in conditions:
        if condition[0] == "OR":
            parts = []
            for sub in condition[1]:
                group = sub if isinstance(sub, list) else [sub]
                clause, params = build_where(group, params)
                parts.append(f"({clause})" if len(group) > 1 else clause)
            clauses.append("(" + " OR ".join(parts) + ")")
            continue

        field, op, value = condition
        op = op.upper()
        if op not in SUPPORTED_OPS:
            raise ValueError(f"Unsupported operator '{op}' for field '{field}'")

        name = f"p{len(params)}"
        expr = field_expr(field)

        if op == "ICONTAINS":
            params[name] = f"%{str(value).lower()}%"
            clauses.append(f"LOWER({expr}) LIKE ${name}")
        elif op == "ANY_ICONTAINS":
            params[name] = f"%{str(value).lower()}%"
            clauses.append(f"ANY v IN {expr} SATISFIES LOWER(v) LIKE ${name} END")
        elif op in ("IN", "NOT IN"):
            params[name] = to_jsonable_python(list(value))
            clauses.append(f"{expr} {op} ${name}")
        elif isinstance(value, datetime):
            params[name] = to_millis(value)
            clauses.append(f"STR_TO_MILLIS({expr}) {op} ${name}")
        elif value is None and op in ("=", "!="):
            clauses.append(f"{expr} IS {'NOT ' if op == '!=' else ''}NULL")
        else:
            params[name] = to_jsonable_python(value)
            clauses.append(f"{expr} {op} ${name}")

    return " AND ".join(clauses), params


def build_order_by(order_by: Optional[Sequence[str]]) -> str:
    """``["amount DESC", "created_at"]`` -> ``ORDER BY `amount` DESC, `created_at` ASC``."""
    if not order_by:
        return ""
    parts = []
    for item in order_by:
        tokens = item.split()
        direction = tokens[1].upper() if len(tokens) > 1 else "ASC"
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"Invalid sort direction in '{item}'")
        parts.append(f"{field_expr(tokens[0])} {direction}")
    return " ORDER BY " + ", ".join(parts)


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    # -- statements -------------------------------------------------------

    def select_statement(
        self,
        conditions: Optional[Sequence] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        where, params = build_where(conditions)
        statement = f"SELECT META().id, * FROM {self} WHERE {where}{build_order_by(order_by)}"
        if limit is not None:
            statement += f" LIMIT {int(limit)}"
        if offset:
            statement += f" OFFSET {int(offset)}"
        return statement, params

    def count_statement(self, conditions: Optional[Sequence] = None) -> Tuple[str, Dict[str, Any]]:
        where, params = build_where(conditions)
        return f"SELECT COUNT(*) AS total FROM {self} WHERE {where}", params

    def update_statement(self, conditions: Sequence, changes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if not changes:
            raise ValueError("update_statement requires at least one change")
        where, params = build_where(conditions)
        assignments = []
        for i, (field, value) in enumerate(changes.items()):
            name = f"s{i}"
            params[name] = to_jsonable_python(value)
            assignments.append(f"{field_expr(field)} = ${name}")
        statement = (
            f"UPDATE {self} SET {', '.join(assignments)} "
            f"WHERE {where} RETURNING META().id"
        )
        return statement, params

    # -- execution --------------------------------------------------------

    async def query(self, statement: str, params: Optional[Dict[str, Any]] = None, consistent: bool = False) -> list:
        cluster = await get_cluster()
        statement = statement.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=params or {})
        if consistent:
            options = QueryOptions(
                named_parameters=params or {},
                scan_consistency=QueryScanConsistency.REQUEST_PLUS,
            )
        result = cluster.query(statement, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def get(self, key: str) -> GetResult:
        collection = await self.get_collection()
        return await collection.get(key)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None) -> MutationResult:
        """Replace a document; with *cas* set the write fails on a concurrent change."""
        collection = await self.get_collection()
        if cas:
            return await collection.replace(key, value, ReplaceOptions(cas=cas))
        return await collection.replace(key, value)

    async def remove(self, key: str, **kwargs) -> int:
        collection = await self.get_collection()
        result = await collection.remove(key, **kwargs)
        return result.cas

    async def find(
        self,
        conditions: Optional[Sequence] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        consistent: bool = False,
    ) -> List[Tuple[str, dict]]:
        """Return ``(id, document)`` pairs matching *conditions*."""
        statement, params = self.select_statement(conditions, order_by, limit, offset)
        rows = await self.query(statement, params, consistent=consistent)
        return [
            (row["id"], row[self.collection_name])
            for row in rows if row.get(self.collection_name)
        ]

    async def count(self, conditions: Optional[Sequence] = None, consistent: bool = False) -> int:
        statement, params = self.count_statement(conditions)
        rows = await self.query(statement, params, consistent=consistent)
        return int(rows[0]["total"]) if rows else 0

    async def update_where(self, conditions: Sequence, changes: Dict[str, Any]) -> int:
        """Apply *changes* to every matching document; returns the number updated."""
        statement, params = self.update_statement(conditions, changes)
        rows = await self.query(statement, params, consistent=True)
        return len(rows)


def get_keyspace(
    collection_name: str,
    scope_name: Optional[str] = DEFAULT_SCOPE_NAME,
    bucket_name: Optional[str] = DEFAULT_BUCKET_NAME,
) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to COUCHBASE_SCOPE or "_default")
        bucket_name: Name of the bucket (defaults to COUCHBASE_BUCKET)
    """
    return Keyspace(bucket_name, scope_name, collection_name)
