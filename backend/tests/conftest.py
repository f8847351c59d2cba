"""
CRM — Test fixtures
In-memory stand-in for the Motor collections used by the import pipeline.
Run: cd backend && pytest tests -v
"""

import copy
import uuid
from datetime import datetime, timezone, timedelta
from types import SimpleNamespace

import pytest
from pymongo import InsertOne, UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError, ServerSelectionTimeoutError

import config
import routes.auth
import routes.clients
import services.activity_logger
import services.client_import
import services.duplicate_detector

IMPORT_USER = {
    "id": "user-importer",
    "email": "importer@test.local",
    "name": "Import User",
    "role": "admin",
    "is_active": True,
}
IMPORT_TOKEN = "test-session-token"

PATCHED_MODULES = (
    config,
    routes.auth,
    routes.clients,
    services.activity_logger,
    services.client_import,
    services.duplicate_detector,
)


# ═══════════════════════════════════════════════════════════════
# FAKE MOTOR
# ═══════════════════════════════════════════════════════════════

def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, expected in condition.items():
            if op == "$in":
                if value not in expected:
                    return False
            elif op == "$gt":
                if value is None or not value > expected:
                    return False
            elif op == "$gte":
                if value is None or not value >= expected:
                    return False
            elif op == "$ne":
                if value == expected:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value == condition


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(doc.get(key), condition):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


class FakeCursor:
    def __init__(self, docs, check_available=None):
        self._docs = docs
        self._check_available = check_available

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        if self._check_available:
            self._check_available()
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Subset of AsyncIOMotorCollection: find/find_one/insert/update/bulk_write"""

    def __init__(self, name):
        self.name = name
        self.docs = {}
        self.bulk_calls = []          # taille de chaque bulk_write reçu
        self.unavailable = False      # simule une perte de connexion
        self.rejections = []          # [(predicate(doc) -> bool, errmsg)]

    # ---- helpers de test ----

    def all(self):
        return [copy.deepcopy(d) for d in self.docs.values()]

    def get(self, _id):
        doc = self.docs.get(_id)
        return copy.deepcopy(doc) if doc is not None else None

    def reject(self, predicate, errmsg="Document failed validation"):
        self.rejections.append((predicate, errmsg))

    # ---- internes ----

    def _check_available(self):
        if self.unavailable:
            raise ServerSelectionTimeoutError("No servers available")

    def _check_rejections(self, doc):
        for predicate, errmsg in self.rejections:
            if predicate(doc):
                return errmsg
        return None

    def _insert(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        if doc["_id"] in self.docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} dup key: {doc['_id']}")
        errmsg = self._check_rejections(doc)
        if errmsg:
            raise DuplicateKeyError(errmsg)
        self.docs[doc["_id"]] = doc
        return doc["_id"]

    def _first(self, query):
        if set(query) == {"_id"} and not isinstance(query["_id"], dict):
            return self.docs.get(query["_id"])
        return next((d for d in self.docs.values() if matches(d, query)), None)

    def _apply(self, doc, update, inserting):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        for key, value in update.get("$push", {}).items():
            doc.setdefault(key, []).append(copy.deepcopy(value))

    def _update(self, query, update, upsert):
        """→ (matched, upserted_id)"""
        doc = self._first(query)
        if doc is not None:
            candidate = copy.deepcopy(doc)
            self._apply(candidate, update, inserting=False)
            errmsg = self._check_rejections(candidate)
            if errmsg:
                raise DuplicateKeyError(errmsg)
            self.docs[doc["_id"]] = candidate
            return 1, None
        if not upsert:
            return 0, None
        new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        self._apply(new_doc, update, inserting=True)
        return 0, self._insert(new_doc)

    # ---- API motor ----

    def find(self, query=None, projection=None):
        docs = [project(d, projection) for d in self.docs.values() if matches(d, query)]
        return FakeCursor(docs, self._check_available)

    async def find_one(self, query=None, projection=None):
        self._check_available()
        doc = self._first(query or {})
        return project(doc, projection) if doc is not None else None

    async def insert_one(self, doc):
        self._check_available()
        return SimpleNamespace(inserted_id=self._insert(doc))

    async def insert_many(self, docs, ordered=True):
        self._check_available()
        inserted, errors = [], []
        for index, doc in enumerate(docs):
            try:
                inserted.append(self._insert(doc))
            except DuplicateKeyError as e:
                errors.append({"index": index, "code": 11000, "errmsg": str(e)})
                if ordered:
                    break
        if errors:
            raise BulkWriteError({"nInserted": len(inserted), "writeErrors": errors})
        return SimpleNamespace(inserted_ids=inserted)

    async def update_one(self, query, update, upsert=False):
        self._check_available()
        matched, upserted_id = self._update(query, update, upsert)
        return SimpleNamespace(matched_count=matched, modified_count=matched, upserted_id=upserted_id)

    async def count_documents(self, query):
        self._check_available()
        return sum(1 for d in self.docs.values() if matches(d, query))

    async def create_index(self, *args, **kwargs):
        return "index"

    async def bulk_write(self, requests, ordered=True):
        self._check_available()
        self.bulk_calls.append(len(requests))
        details = {
            "nInserted": 0, "nUpserted": 0, "nMatched": 0, "nModified": 0, "nRemoved": 0,
            "upserted": [], "writeErrors": [], "writeConcernErrors": [],
        }
        for index, op in enumerate(requests):
            try:
                if isinstance(op, InsertOne):
                    self._insert(op._doc)
                    details["nInserted"] += 1
                elif isinstance(op, UpdateOne):
                    matched, upserted_id = self._update(op._filter, op._doc, op._upsert)
                    details["nMatched"] += matched
                    details["nModified"] += matched
                    if upserted_id is not None:
                        details["nUpserted"] += 1
                        details["upserted"].append({"index": index, "_id": upserted_id})
                else:
                    raise NotImplementedError(type(op))
            except DuplicateKeyError as e:
                details["writeErrors"].append({"index": index, "code": 11000, "errmsg": str(e)})
                if ordered:
                    break
        if details["writeErrors"]:
            raise BulkWriteError(details)
        return SimpleNamespace(bulk_api_result=details)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]


# ═══════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def fake_db(monkeypatch):
    """Remplace `db` dans chaque module qui l'importe"""
    database = FakeDatabase()
    for module in PATCHED_MODULES:
        monkeypatch.setattr(module, "db", database)
    return database


@pytest.fixture
def seeded_db(fake_db):
    """fake_db + utilisateur importateur et session valide"""
    fake_db.users.docs[IMPORT_USER["id"]] = {"_id": IMPORT_USER["id"], **IMPORT_USER}
    fake_db.sessions.docs["s1"] = {
        "_id": "s1",
        "token": IMPORT_TOKEN,
        "user_id": IMPORT_USER["id"],
        "expires_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
    }
    return fake_db


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {IMPORT_TOKEN}"}
