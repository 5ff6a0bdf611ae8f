"""
Shared fixtures.

Couchbase is replaced by an in-memory keyspace so the operations run against
the real ``BaseModelCouchbase`` logic (timestamps, ``before_save`` hooks, CAS
checks, structured where-clauses).
"""

import copy
import itertools
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence, Tuple

os.environ.setdefault("COUCHBASE_HOST", "localhost")
os.environ.setdefault("COUCHBASE_USERNAME", "test")
os.environ.setdefault("COUCHBASE_PASSWORD", "test")
os.environ.setdefault("COUCHBASE_BUCKET", "agrimarket")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import jwt
import pytest
from couchbase.exceptions import CASMismatchException, DocumentExistsException, DocumentNotFoundException
from pydantic_core import to_jsonable_python

from clients.couchbase import base_model
from clients.relay import hub

TEST_JWT_SECRET = os.environ["AUTH_JWT_SECRET"]


# ---------------------------------------------------------------------------
# In-memory keyspace
# ---------------------------------------------------------------------------

_MISSING = object()


def _lookup(key: str, doc: dict, field: str) -> Any:
    if field == "id":
        return key
    value: Any = doc
    for part in field.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _assign(doc: dict, field: str, value: Any) -> None:
    parts = field.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return value if isinstance(value, datetime) else None


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "=":
        return left == right
    if op == "!=":
        return left != right
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise ValueError(f"Unsupported operator {op}")


def matches(key: str, doc: dict, conditions: Optional[Sequence]) -> bool:
    for condition in conditions or []:
        if condition[0] == "OR":
            alternatives = [sub if isinstance(sub, list) else [sub] for sub in condition[1]]
            if not any(matches(key, doc, group) for group in alternatives):
                return False
            continue

        field, op, value = condition
        op = op.upper()
        actual = _lookup(key, doc, field)

        if value is None and op in ("=", "!="):
            is_null = actual is _MISSING or actual is None
            if is_null != (op == "="):
                return False
            continue
        if actual is _MISSING or actual is None:
            return False

        if op == "IN":
            ok = actual in to_jsonable_python(list(value))
        elif op == "NOT IN":
            ok = actual not in to_jsonable_python(list(value))
        elif op == "ICONTAINS":
            ok = str(value).lower() in str(actual).lower()
        elif op == "ANY_ICONTAINS":
            ok = isinstance(actual, list) and any(str(value).lower() in str(v).lower() for v in actual)
        elif isinstance(value, datetime):
            ok = _compare(op, _as_datetime(actual), value)
        else:
            ok = _compare(op, actual, to_jsonable_python(value))
        if not ok:
            return False
    return True


def _sort(rows: List[Tuple[str, dict]], order_by: Optional[Sequence[str]]) -> List[Tuple[str, dict]]:
    for item in reversed(list(order_by or [])):
        tokens = item.split()
        field = tokens[0]
        descending = len(tokens) > 1 and tokens[1].upper() == "DESC"

        def sort_key(row, field=field):
            value = _lookup(row[0], row[1], field)
            if value is _MISSING or value is None:
                return (0, 0)
            moment = _as_datetime(value) if isinstance(value, str) else None
            return (1, moment.timestamp() if moment else value)

        rows = sorted(rows, key=sort_key, reverse=descending)
    return rows


class FakeKeyspace:
    def __init__(self, store: "FakeStore", collection_name: str):
        self.store = store
        self.collection_name = collection_name

    @property
    def docs(self) -> Dict[str, Tuple[dict, int]]:
        return self.store.collections.setdefault(self.collection_name, {})

    async def get(self, key: str):
        if key not in self.docs:
            raise DocumentNotFoundException()
        doc, cas = self.docs[key]
        return SimpleNamespace(content_as={dict: copy.deepcopy(doc)}, cas=cas)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs):
        if key in self.docs:
            raise DocumentExistsException()
        cas = self.store.next_cas()
        self.docs[key] = (copy.deepcopy(value), cas)
        return SimpleNamespace(cas=cas)

    async def replace(self, key: str, value: dict, cas: Optional[int] = None):
        if key not in self.docs:
            raise DocumentNotFoundException()
        if self.store.force_cas_mismatch:
            self.store.force_cas_mismatch -= 1
            raise CASMismatchException()
        _, current = self.docs[key]
        if cas and cas != current:
            raise CASMismatchException()
        new_cas = self.store.next_cas()
        self.docs[key] = (copy.deepcopy(value), new_cas)
        return SimpleNamespace(cas=new_cas)

    async def remove(self, key: str, **kwargs):
        if key not in self.docs:
            raise DocumentNotFoundException()
        _, cas = self.docs.pop(key)
        return cas

    async def query(self, statement: str, params: Optional[Dict[str, Any]] = None, consistent: bool = False) -> list:
        self.store.statements.append(statement)
        return []

    def _matching(self, conditions) -> List[Tuple[str, dict]]:
        return [
            (key, copy.deepcopy(doc))
            for key, (doc, _) in self.docs.items()
            if matches(key, doc, conditions)
        ]

    async def find(self, conditions=None, order_by=None, limit=None, offset=None, consistent=False):
        rows = _sort(self._matching(conditions), order_by)
        start = offset or 0
        end = start + limit if limit is not None else None
        return rows[start:end]

    async def count(self, conditions=None, consistent=False) -> int:
        return len(self._matching(conditions))

    async def update_where(self, conditions, changes: Dict[str, Any]) -> int:
        updated = 0
        for key, (doc, _) in list(self.docs.items()):
            if not matches(key, doc, conditions):
                continue
            for field, value in changes.items():
                _assign(doc, field, to_jsonable_python(value))
            self.docs[key] = (doc, self.store.next_cas())
            updated += 1
        return updated


class FakeStore:
    def __init__(self):
        self.collections: Dict[str, Dict[str, Tuple[dict, int]]] = {}
        self.statements: List[str] = []
        self.force_cas_mismatch = 0
        self._cas = itertools.count(1)

    def next_cas(self) -> int:
        return next(self._cas)

    def keyspace(self, collection_name: str, *args, **kwargs) -> FakeKeyspace:
        return FakeKeyspace(self, collection_name)

    def raw(self, collection_name: str, key: str) -> dict:
        return self.collections[collection_name][key][0]

    def patch_raw(self, collection_name: str, key: str, **fields: Any) -> None:
        doc, _ = self.collections[collection_name][key]
        for field, value in fields.items():
            _assign(doc, field, to_jsonable_python(value))
        self.collections[collection_name][key] = (doc, self.next_cas())


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(base_model, "get_keyspace", fake.keyspace)
    return fake


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class RecordingConnection:
    def __init__(self, user_id: str, role: Optional[str] = None, fail: bool = False):
        self.user_id = user_id
        self.role = role
        self.fail = fail
        self.messages: List[dict] = []

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(data)

    def events(self, name: Optional[str] = None) -> List[dict]:
        return [m for m in self.messages if name is None or m["event"] == name]


@pytest.fixture(autouse=True)
def relay_hub():
    hub.reset()
    yield hub
    hub.reset()


@pytest.fixture
def listen(relay_hub):
    """Subscribe a recording connection to a room: ``listen("user_<id>")``."""
    def _listen(room: str, user_id: str = "listener") -> RecordingConnection:
        conn = RecordingConnection(user_id)
        relay_hub.register(conn)
        relay_hub.join(conn, room)
        return conn

    return _listen


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------

FARMER_ID = "farmer-1"
BUYER_ID = "buyer-1"
OTHER_BUYER_ID = "buyer-2"
TRANSPORTER_ID = "transporter-1"


def utc_in(**delta) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**delta)


def product_values(**overrides) -> Dict[str, Any]:
    values = {
        "name": "Organic Tomatoes",
        "category": "vegetables",
        "description": "Fresh vine-ripened tomatoes from the Nashik valley.",
        "quantity": {"value": 500, "unit": "kg"},
        "base_price": 100,
        "minimum_bid_increment": 10,
        "images": ["products/tomatoes-1.jpg"],
        "location": {
            "address": "Plot 12, Farm Road",
            "city": "Nashik",
            "state": "Maharashtra",
            "pincode": "422001",
        },
        "harvest_date": utc_in(days=-2),
        "available_until": utc_in(days=10),
        "bidding_end_time": utc_in(days=3),
        "tags": ["tomato", "organic"],
    }
    values.update(overrides)
    return values


def location_values(city: str = "Nashik", pincode: str = "422001") -> Dict[str, Any]:
    return {
        "address": "Market Yard, Gate 3",
        "city": city,
        "state": "Maharashtra",
        "pincode": pincode,
        "contact_person": {"name": "Ravi", "phone": "9876543210"},
    }


def transport_values(**overrides) -> Dict[str, Any]:
    values = {
        "pickup_location": location_values(),
        "delivery_location": location_values(city="Pune", pincode="411001"),
        "vehicle": {"type": "truck", "number": "mh15ab1234", "capacity": 2000},
        "cost": {
            "base_fare": 1500,
            "distance_charge": 800,
            "loading_charge": 200,
            "unloading_charge": 200,
            "additional_charges": 100,
            "discount": 300,
        },
        "distance": {"value": 210, "unit": "km"},
        "estimated_duration": {"value": 5, "unit": "hours"},
        "scheduled_pickup_time": utc_in(days=1),
        "scheduled_delivery_time": utc_in(days=1, hours=6),
    }
    values.update(overrides)
    return values


@pytest.fixture
def make_product(store):
    from models.operations.products import product_create

    async def _make(farmer_id: str = FARMER_ID, **overrides):
        return await product_create(farmer_id, product_values(**overrides))

    return _make


@pytest.fixture
def sold_product(store, make_product):
    """A product with an accepted bid of 110 from BUYER_ID."""
    from models.operations.bids import bid_accept, bid_submit

    async def _make():
        product = await make_product()
        bid = await bid_submit(product.id, BUYER_ID, 110)
        bid = await bid_accept(bid.id, FARMER_ID)
        return product, bid

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

def make_token(sub: str, role: Optional[str] = None, email: Optional[str] = None, secret: str = TEST_JWT_SECRET) -> str:
    claims = {"sub": sub, "email": email or f"{sub}@example.com"}
    if role:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def app(store):
    from main import app as fastapi_app
    from utils import auth

    fastapi_app.state.auth_client = auth.AuthClient(auth.AuthClientConfig(jwt_secret=TEST_JWT_SECRET))
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(sub: str, role: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(sub, role)}"}

    return _headers
