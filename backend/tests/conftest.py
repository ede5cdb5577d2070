"""
Pytest configuration and shared test helpers for backend tests.
"""
import asyncio
import copy
import itertools
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
import pytest_asyncio
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

OWNER_ID = "owner-123"
SIGNATURE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
GENERATED_AT = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# In-memory Mongo stand-in
# ============================================================================

# Unique indexes mirrored from database._create_indexes
UNIQUE_KEYS = {
    "contracts": [("token",), ("id",)],
    "contract_templates": [("id",)],
    "business_settings": [("owner_id",)],
    "receivables": [("contract_id", "sequence_number")],
    "receivable_jobs": [("contract_id",)],
}

_ids = itertools.count(1)


def _matches_condition(value, condition) -> bool:
    if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if value not in operand:
                    return False
            elif op == "$gte":
                if value is None or not value >= operand:
                    return False
            elif op == "$gt":
                if value is None or not value > operand:
                    return False
            elif op == "$lte":
                if value is None or not value <= operand:
                    return False
            elif op == "$lt":
                if value is None or not value < operand:
                    return False
            elif op == "$ne":
                if value == operand:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value == condition


def _matches(doc, query) -> bool:
    return all(_matches_condition(doc.get(key), cond) for key, cond in (query or {}).items())


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v and k != "_id"]
    if include:
        projected = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1):
            projected["_id"] = doc.get("_id")
        return projected
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        present = [d for d in self._docs if d.get(key) is not None]
        missing = [d for d in self._docs if d.get(key) is None]
        present.sort(key=lambda d: d[key], reverse=direction == -1)
        self._docs = present + missing
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        if length is None:
            return list(self._docs)
        return list(self._docs[:length])


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def _check_unique(self, doc, ignore=None):
        for keys in UNIQUE_KEYS.get(self.name, []):
            if any(doc.get(k) is None for k in keys):
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if all(other.get(k) == doc.get(k) for k in keys):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {keys}")

    def _apply(self, doc, update, inserting=False):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)

    async def insert_one(self, doc):
        doc.setdefault("_id", next(_ids))
        self._check_unique(doc)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def insert_many(self, docs):
        ids = []
        for doc in docs:
            result = await self.insert_one(doc)
            ids.append(result.inserted_id)
        return SimpleNamespace(inserted_ids=ids)

    async def find_one(self, query=None, projection=None):
        await asyncio.sleep(0)
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def count_documents(self, query):
        return len([d for d in self.docs if _matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            self._apply(doc, update, inserting=True)
            result = await self.insert_one(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=result.inserted_id)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        count = 0
        for doc in self.docs:
            if _matches(doc, query):
                self._apply(doc, update)
                count += 1
        return SimpleNamespace(matched_count=count, modified_count=count)

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE):
        # Yield first so concurrent callers interleave; match + write stay atomic like Mongo
        await asyncio.sleep(0)
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                chosen = doc if return_document == ReturnDocument.AFTER else before
                return _project(chosen, projection)
        return None


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    async def command(self, name):
        return {"ok": 1}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_db():
    """In-memory database wired into every module that uses database.get_db()."""
    from database import database

    db = FakeDB()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def clock():
    from utils.clock import FixedClock
    return FixedClock(GENERATED_AT)


@pytest.fixture
def service(clock):
    from services.contract_service import ContractService
    return ContractService(clock=clock)


@pytest.fixture
def lead_snapshot():
    from models import LeadSnapshot, PaymentTerms, ProductLine
    return LeadSnapshot(
        client_name="Maria Souza",
        client_email="maria@example.com",
        client_phone="+55 11 99999-0000",
        event_type="Wedding",
        event_date="2024-06-15",
        event_city="Campinas",
        products=[
            ProductLine(name="Photo album", unit_price=Decimal("600.00"), quantity=1),
            ProductLine(name="Prints", unit_price=Decimal("20.00"), quantity=20),
        ],
        subtotal=Decimal("1000.00"),
        total_value=Decimal("1000.00"),
        payment_method_name="Pix",
        payment_details=PaymentTerms(
            id="pm-1",
            name="Pix 30% + 3x",
            down_payment_mode="percent",
            down_payment_amount=Decimal("30"),
            installment_count=3,
        ),
    )


@pytest.fixture
def business_snapshot():
    from models import BusinessSnapshot
    return BusinessSnapshot(
        business_name="Studio Luz",
        person_type="company",
        company_tax_id="12.345.678/0001-90",
        email="contato@studioluz.com",
        phone="+55 11 3333-4444",
        address="Rua das Flores, 100",
        city="Campinas",
        state="SP",
        zip_code="13000-000",
        pix_key="contato@studioluz.com",
        signature_base64=SIGNATURE,
    )


@pytest_asyncio.fixture
async def template(fake_db):
    doc = {
        "id": "tpl-1",
        "owner_id": OWNER_ID,
        "name": "Photography contract",
        "content_text": (
            "<p>{{business_name}} and {{client_name}} agree on {{event_type}} "
            "at {{event_city}} on {{event_date}} for {{total_value}}.</p>"
            "{{products_list}}<p>{{payment_terms}}</p>"
        ),
        "created_at": GENERATED_AT,
    }
    await fake_db.contract_templates.insert_one(doc)
    return doc


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
