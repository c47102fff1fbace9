"""
Pydantic models for the audit log wire format and the users API.
"""

import json
from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Caller Context
# ============================================================================

class RequestContext(BaseModel):
    """Identity and client metadata of the caller behind a request."""

    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    ip: Optional[str] = None
    method: Optional[str] = None
    user_agent: Optional[str] = None

    def source(self) -> str:
        """Client metadata as recorded in the event's source field."""
        data = {"ip": self.ip, "method": self.method, "userAgent": self.user_agent}
        return json.dumps(
            {key: value for key, value in data.items() if value is not None},
            separators=(',', ':'),
        )


class AuditSession(BaseModel):
    """
    Per-caller audit state.

    Carries the last unpublished root returned by the service so that
    consecutive verified log calls can prove the tree only grew.
    """

    context: RequestContext = Field(default_factory=RequestContext)
    prev_unpublished_root_hash: Optional[str] = None

    def advance_root(self, unpublished_root: Optional[str]) -> None:
        if unpublished_root is not None:
            self.prev_unpublished_root_hash = unpublished_root


# ============================================================================
# Audit Event Models
# ============================================================================

class Event(BaseModel):
    """A structured event describing an auditable activity."""

    model_config = ConfigDict(extra="allow")

    actor: Optional[str] = None
    action: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    target: Optional[str] = None
    message: Optional[Any] = Field(default=None, description="Free-form text or JSON object")
    old: Optional[Any] = None
    new: Optional[Any] = None
    tenant_id: Optional[str] = None
    service_name: Optional[str] = None
    timestamp: Optional[datetime] = None


class LogOptions(BaseModel):
    """Options for log and log_bulk submissions."""

    verbose: Optional[bool] = None
    verify: bool = False
    skip_event_verification: bool = False
    signer: Optional[Any] = Field(
        default=None,
        description="Object exposing sign(), get_public_key() and get_algorithm()"
    )
    public_key_info: Optional[Dict[str, Any]] = None


class LogData(BaseModel):
    """Payload of a single event submission."""

    event: Dict[str, Any]
    config_id: Optional[str] = None
    signature: Optional[str] = None
    public_key: Optional[str] = None
    verbose: Optional[bool] = None
    prev_root: Optional[str] = None


class LogBulkRequest(BaseModel):
    events: List[LogData]
    verbose: Optional[bool] = None


class EventEnvelope(BaseModel):
    """Event as hashed and signed by the audit service."""

    model_config = ConfigDict(extra="allow")

    event: Dict[str, Any]
    signature: Optional[str] = None
    public_key: Optional[str] = None
    received_at: Optional[str] = None


class LogResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    envelope: Optional[EventEnvelope] = None
    hash: Optional[str] = None
    unpublished_root: Optional[str] = None
    membership_proof: Optional[str] = None
    consistency_proof: Optional[List[str]] = None
    signature_verification: Optional[bool] = None
    membership_verification: Optional[bool] = None
    consistency_verification: Optional[bool] = None


class LogBulkResult(BaseModel):
    results: List[LogResult] = Field(default_factory=list)


# ============================================================================
# Tree Root Models
# ============================================================================

class Root(BaseModel):
    """Snapshot of the Merkle tree at a given size."""

    model_config = ConfigDict(extra="allow")

    tree_name: str
    size: int
    root_hash: str
    published_at: Optional[str] = None
    consistency_proof: Optional[List[str]] = None
    url: Optional[str] = None
    transaction_id: Optional[str] = None


class RootRequest(BaseModel):
    tree_size: Optional[int] = None


class RootResult(BaseModel):
    data: Root


# ============================================================================
# Search Models
# ============================================================================

class SearchQueryOptions(BaseModel):
    """Paging and ordering for a search; unset fields use the defaults."""

    limit: Optional[int] = Field(default=None, ge=1)
    max_results: Optional[int] = Field(default=None, ge=1)
    start: Optional[str] = None
    end: Optional[str] = None
    order: Optional[Literal["asc", "desc"]] = None
    order_by: Optional[str] = None
    search_restriction: Optional[Dict[str, List[str]]] = None
    verbose: Optional[bool] = None


class SearchOptions(BaseModel):
    verify_consistency: bool = False
    skip_event_verification: bool = False


class SearchRequest(BaseModel):
    query: str
    limit: int = 20
    order: str = "desc"
    order_by: str = "received_at"
    max_results: Optional[int] = None
    start: Optional[str] = None
    end: Optional[str] = None
    search_restriction: Optional[Dict[str, List[str]]] = None
    verbose: Optional[bool] = None


class ResultsRequest(BaseModel):
    id: str
    limit: int = 20
    offset: int = 0


class AuditRecord(BaseModel):
    """One event returned by search or results."""

    model_config = ConfigDict(extra="allow")

    envelope: Optional[EventEnvelope] = None
    hash: Optional[str] = None
    leaf_index: Optional[int] = None
    membership_proof: Optional[str] = None
    published: Optional[bool] = None
    signature_verification: Optional[bool] = None
    membership_verification: Optional[bool] = None
    consistency_verification: Optional[bool] = None


class SearchResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    count: int = 0
    expires_at: Optional[str] = None
    events: List[AuditRecord] = Field(default_factory=list)
    root: Optional[Root] = None
    unpublished_root: Optional[Root] = None


class DownloadRequest(BaseModel):
    result_id: str
    format: Optional[Literal["csv", "json"]] = None


class DownloadResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    dest_url: str
    expires_at: Optional[str] = None


# ============================================================================
# Service Envelope
# ============================================================================

T = TypeVar("T")


class AuditResponse(BaseModel, Generic[T]):
    """Envelope wrapping every audit service response."""

    model_config = ConfigDict(extra="allow")

    request_id: Optional[str] = None
    request_time: Optional[str] = None
    response_time: Optional[str] = None
    status: str = "Success"
    summary: Optional[str] = None
    result: Optional[T] = None

    @property
    def success(self) -> bool:
        return self.status == "Success"


# ============================================================================
# User Models
# ============================================================================

class UserCreate(BaseModel):
    """Request to create a user."""

    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)


class UserUpdate(BaseModel):
    """Partial update of a user."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)


class UserRecord(BaseModel):
    id: UUID
    name: str
    email: str
    organization_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = Field(default=None, max_length=50)
    updated_by: Optional[str] = Field(default=None, max_length=50)


class UserFilter(BaseModel):
    """Query parameters for listing users."""

    id: Optional[UUID] = None
    organization_id: Optional[str] = None
    order: Literal["ASC", "DESC"] = "DESC"
    skip: int = Field(default=0, ge=0)
    take: int = Field(default=20, ge=1, le=1000)
    from_time: Optional[datetime] = None
    to_time: Optional[datetime] = None
    updated_from_time: Optional[datetime] = None
    updated_to_time: Optional[datetime] = None


class UserPage(BaseModel):
    items: List[UserRecord]
    count: int
    skip: int
    take: int


# ============================================================================
# Health Check Models
# ============================================================================

class HealthStatus(BaseModel):
    """Health check response."""

    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    database: str = Field(..., examples=["connected", "disconnected"])
    audit_log: str = Field(..., examples=["configured", "no token", "not started"])
    uptime_seconds: float
    timestamp: datetime
