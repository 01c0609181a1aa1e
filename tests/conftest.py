import os
from typing import Dict, List, Optional

import pytest
from google.api_core.exceptions import AlreadyExists, NotFound

# Must be set before the app modules are imported
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("GCP_PROJECT_ID", "test-project")
os.environ.setdefault("GCP_INSTANCE_ID_LIST", "inst-a,inst-b")
os.environ.setdefault("AUTH_ENABLED", "false")

from fastapi.testclient import TestClient

from bigtable_ops import BigtableOperations
from config import Settings
from registry import ClientRegistry, InstanceHandles
import main


# ----------------------------------------------------------------------
# In-memory stand-ins for the google-cloud-bigtable Instance/Table API
# ----------------------------------------------------------------------

class FakeCell:
    def __init__(self, value: bytes):
        self.value = value


class FakeRowData:
    def __init__(self, row_key: bytes, cells):
        self.row_key = row_key
        self.cells = cells


class FakeStatus:
    def __init__(self, code: int = 0, message: str = ""):
        self.code = code
        self.message = message


class FakeBackend:
    """Tables of one instance: name -> {"families": set, "rows": {key: {fam: {qual: [cells]}}}}."""

    def __init__(self):
        self.tables: Dict[str, dict] = {}
        self.calls: List[str] = []
        # gRPC code every commit reports instead of applying, when set
        self.commit_failure: Optional[int] = None


class FakeDirectRow:
    def __init__(self, table: "FakeTable", row_key: bytes):
        self._table = table
        self.row_key = row_key
        self._pending = []

    def set_cell(self, column_family_id, column, value):
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._pending.append((column_family_id, column, value))

    def commit(self):
        backend = self._table.backend
        backend.calls.append(f"commit:{self._table.table_id}")
        stored = backend.tables.get(self._table.table_id)
        if stored is None:
            raise NotFound(f"Table not found: {self._table.table_id}")
        if backend.commit_failure is not None:
            return FakeStatus(code=backend.commit_failure, message="injected failure")
        if any(family not in stored["families"] for family, _, _ in self._pending):
            return FakeStatus(code=5, message="Requested column family not found")
        row = stored["rows"].setdefault(self.row_key, {})
        for family, column, value in self._pending:
            row.setdefault(family, {}).setdefault(column, []).insert(0, FakeCell(value))
        return FakeStatus()


class FakeTable:
    def __init__(self, backend: FakeBackend, table_id: str):
        self.backend = backend
        self.table_id = table_id

    def _stored(self):
        stored = self.backend.tables.get(self.table_id)
        if stored is None:
            raise NotFound(f"Table not found: {self.table_id}")
        return stored

    def exists(self):
        self.backend.calls.append(f"exists:{self.table_id}")
        return self.table_id in self.backend.tables

    def create(self, initial_split_keys=None, column_families=None):
        self.backend.calls.append(f"create:{self.table_id}")
        if self.table_id in self.backend.tables:
            raise AlreadyExists(f"Table already exists: {self.table_id}")
        self.backend.tables[self.table_id] = {"families": set(column_families or {}), "rows": {}}

    def delete(self):
        self.backend.calls.append(f"delete:{self.table_id}")
        self._stored()
        del self.backend.tables[self.table_id]

    def direct_row(self, row_key):
        return FakeDirectRow(self, row_key)

    def read_row(self, row_key, filter_=None):
        self.backend.calls.append(f"read_row:{self.table_id}")
        cells = self._stored()["rows"].get(row_key)
        if not cells:
            return None
        return FakeRowData(row_key, cells)

    def read_rows(self, start_key=None, end_key=None, limit=None, filter_=None, **kwargs):
        self.backend.calls.append(f"read_rows:{self.table_id}")
        rows = self._stored()["rows"]
        emitted = 0
        for key in sorted(rows):
            if start_key is not None and key < start_key:
                continue
            if limit and emitted >= limit:
                return
            emitted += 1
            yield FakeRowData(key, rows[key])


class FakeInstance:
    def __init__(self, backend: FakeBackend):
        self.backend = backend

    def table(self, table_id):
        return FakeTable(self.backend, table_id)


# ----------------------------------------------------------------------
# In-memory stand-ins for google-cloud-storage
# ----------------------------------------------------------------------

class FakeBlobWriter:
    def __init__(self, blob: "FakeBlob"):
        self._blob = blob
        self._parts: List[str] = []

    def write(self, text: str):
        self._parts.append(text)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._blob.content = "".join(self._parts)
        return False


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str):
        self.bucket = bucket
        self.name = name
        self.content: Optional[str] = None
        self.deleted = False

    def open(self, mode="r", content_type=None, **kwargs):
        self.bucket.blobs[self.name] = self
        return FakeBlobWriter(self)

    def reload(self):
        pass

    @property
    def size(self):
        return len(self.content.encode("utf-8")) if self.content else 0

    def exists(self):
        return self.name in self.bucket.blobs

    def delete(self):
        self.deleted = True
        self.bucket.blobs.pop(self.name, None)


class FakeBucket:
    def __init__(self, name: str, exists: bool = True):
        self.name = name
        self._exists = exists
        self.blobs: Dict[str, FakeBlob] = {}

    def exists(self):
        return self._exists

    def blob(self, name):
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self, buckets: Dict[str, FakeBucket]):
        self.buckets = buckets

    def bucket(self, name):
        return self.buckets.get(name) or FakeBucket(name, exists=False)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def registry(backend):
    # inst-b gets its own storage so cross-instance isolation can be checked
    other = FakeBackend()
    return ClientRegistry({
        "inst-a": InstanceHandles("inst-a", FakeInstance(backend), FakeInstance(backend)),
        "inst-b": InstanceHandles("inst-b", FakeInstance(other), FakeInstance(other)),
    })


@pytest.fixture
def export_bucket():
    return FakeBucket("kv-exports")


@pytest.fixture
def operations(registry, export_bucket):
    return BigtableOperations(
        registry,
        column_family="cf1",
        column_qualifier="name",
        max_scan_limit=500,
        storage_client_factory=lambda: FakeStorageClient({"kv-exports": export_bucket}),
    )


@pytest.fixture
def settings():
    return Settings(
        project_id="test-project",
        instance_ids=("inst-a", "inst-b"),
        default_scan_limit=100,
        max_scan_limit=500,
        auth_enabled=False,
    )


@pytest.fixture
def client(operations, settings):
    main.app.state.settings = settings
    main.app.dependency_overrides[main.get_operations] = lambda: operations
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
