"""
Test fixtures and configuration for pytest.
"""

import base64
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import httpx
import pytest

from audit_backend.config import Settings
from audit_backend.crypto import (
    Ed25519Signer,
    canonicalize_envelope,
    generate_ed25519_keypair,
    hash_data,
)
from audit_backend.models import AuditSession, RequestContext
from audit_backend.merkle import hash_pair
from audit_backend.services.audit_logs import AuditLogsService

AUDIT_BASE_URL = "https://audit.test/"
ARWEAVE_BASE_URL = "https://arweave.test"


def envelope_hash(envelope: dict) -> str:
    """Hash the audit service would return for an envelope."""
    return hash_data(canonicalize_envelope(envelope))


def node(left: str, right: str) -> str:
    """Interior Merkle node over two hex hashes."""
    return hash_pair(bytes.fromhex(left), bytes.fromhex(right)).hex()


def service_response(result: Any, status: str = "Success") -> Dict[str, Any]:
    return {
        "request_id": "prq_test",
        "request_time": "2024-01-01T00:00:00Z",
        "response_time": "2024-01-01T00:00:01Z",
        "status": status,
        "summary": "ok" if status == "Success" else "failed",
        "result": result,
    }


def arweave_payload(root: dict) -> str:
    """Transaction data as served by Arweave: base64url JSON, unpadded."""
    return base64.urlsafe_b64encode(json.dumps(root).encode()).decode().rstrip("=")


class RecordingTransport(httpx.MockTransport):
    """
    Mock transport routing by (method, path) and recording every request.

    Routes map to a callable taking the decoded JSON body (or None) and
    returning either an httpx.Response or a JSON-serializable body.
    """

    def __init__(self, routes: Dict[Tuple[str, str], Callable[[Any], Any]]):
        self.routes = routes
        self.requests: List[Tuple[str, str, Any]] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"status": "NotFound", "summary": "no route"})
        answer = route(body)
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    def bodies(self, path: str) -> List[Any]:
        return [body for _, p, body in self.requests if p == path]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        audit_log_api_host=AUDIT_BASE_URL,
        audit_log_api_token="pts_test",
        audit_log_config_id="pci_test",
        audit_log_service_name="users-api",
        arweave_base_url=ARWEAVE_BASE_URL,
    )


@pytest.fixture
def request_context() -> RequestContext:
    return RequestContext(
        actor_id="Xjaafefeefq",
        organization_id="oeqeq",
        ip="10.0.0.7",
        method="POST",
        user_agent="pytest",
    )


@pytest.fixture
def session(request_context: RequestContext) -> AuditSession:
    return AuditSession(context=request_context)


@pytest.fixture
def ed25519_keypair() -> Tuple[str, str]:
    """Generate an Ed25519 keypair for testing."""
    return generate_ed25519_keypair()


@pytest.fixture
def signer(ed25519_keypair: Tuple[str, str]) -> Ed25519Signer:
    private_key, _ = ed25519_keypair
    return Ed25519Signer(private_key)


@pytest.fixture
def make_service(test_settings: Settings):
    """
    Build an AuditLogsService over mock transports.

    Returns (service, audit_transport, arweave_transport).
    """
    def factory(
        routes: Dict[Tuple[str, str], Callable[[Any], Any]],
        arweave_routes: Optional[Dict[Tuple[str, str], Callable[[Any], Any]]] = None,
    ):
        audit_transport = RecordingTransport(routes)
        arweave_transport = RecordingTransport(arweave_routes or {})
        client = httpx.AsyncClient(base_url=AUDIT_BASE_URL, transport=audit_transport)
        arweave_client = httpx.AsyncClient(transport=arweave_transport)
        service = AuditLogsService(client, test_settings, arweave_client=arweave_client)
        return service, audit_transport, arweave_transport

    return factory


@pytest.fixture
def tree() -> Dict[str, Any]:
    """
    Five envelopes and the Merkle material over their hashes.

    Layout of the size-5 tree:

        root5 = H(root4, h4)
        root4 = H(H(h0, h1), H(h2, h3))
    """
    envelopes = [
        {
            "event": {"action": "login", "message": f"event {i}", "actor": "alice"},
            "received_at": f"2024-01-01T00:00:0{i}.000000Z",
        }
        for i in range(5)
    ]
    leaves = [envelope_hash(envelope) for envelope in envelopes]
    n01 = node(leaves[0], leaves[1])
    n23 = node(leaves[2], leaves[3])
    root4 = node(n01, n23)
    root5 = node(root4, leaves[4])

    return {
        "tree_name": "a1b2c3",
        "envelopes": envelopes,
        "leaves": leaves,
        "n01": n01,
        "root4": root4,
        "root5": root5,
        "proof_h2_in_root4": f"r:{leaves[3]},l:{n01}",
        "proof_h2_in_root5": f"r:{leaves[3]},l:{n01},r:{leaves[4]}",
        "proof_h4_in_root5": f"l:{root4}",
        "consistency_4_to_5": [f"x:{root4},r:{leaves[4]}"],
    }


class MockDatabase:
    """Mock database recording queries, for testing without PostgreSQL."""

    def __init__(self):
        self.queries: List[Tuple[str, tuple]] = []
        self.row: Optional[dict] = None
        self.rows: List[dict] = []
        self.value: Any = 0
        self.status = "UPDATE 1"
        self.healthy = True

    async def fetchrow(self, query: str, *args):
        self.queries.append((query, args))
        return self.row

    async def fetch(self, query: str, *args):
        self.queries.append((query, args))
        return self.rows

    async def fetchval(self, query: str, *args):
        self.queries.append((query, args))
        return self.value

    async def execute(self, query: str, *args):
        self.queries.append((query, args))
        return self.status

    def transaction(self):
        return MockTransaction(self)

    async def health_check(self) -> bool:
        return self.healthy


class MockTransaction:
    """Mock transaction context manager."""

    def __init__(self, db: MockDatabase):
        self.db = db

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


@pytest.fixture
def mock_db() -> MockDatabase:
    return MockDatabase()


class FakeStore:
    """In-memory RecordStore keyed by id."""

    def __init__(self):
        self.rows = {}
        self.soft_deleted = set()

    async def insert(self, values):
        now = datetime.now(timezone.utc)
        row = {"id": uuid4(), "created_at": now, "updated_at": now, **values}
        self.rows[row["id"]] = row
        return row

    async def insert_many(self, rows):
        return [await self.insert(values) for values in rows]

    async def find(self, conditions=(), order_by="created_at", descending=True, offset=0, limit=None):
        matches = [
            dict(row) for row in self.rows.values()
            if row["id"] not in self.soft_deleted
            and all(row.get(column) == value for column, _, value in conditions)
        ]
        matches = matches[offset:]
        return matches[:limit] if limit is not None else matches

    async def count(self, conditions=()):
        return len(await self.find(conditions))

    async def update(self, record_id, values):
        if record_id not in self.rows or record_id in self.soft_deleted:
            return None
        self.rows[record_id].update(values)
        return dict(self.rows[record_id])

    async def upsert(self, values, conflict_columns):
        for row in self.rows.values():
            if all(row.get(c) == values[c] for c in conflict_columns):
                row.update({k: v for k, v in values.items() if k != "created_by"})
                return row
        return await self.insert(values)

    async def delete(self, record_id):
        return self.rows.pop(record_id, None) is not None

    async def soft_delete(self, record_id):
        if record_id not in self.rows or record_id in self.soft_deleted:
            return False
        self.soft_deleted.add(record_id)
        return True


