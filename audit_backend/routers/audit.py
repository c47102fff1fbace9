"""
Audit log query endpoints - /v1/audit/*

Thin HTTP layer over AuditLogsService; responses carry the
verification verdicts computed locally.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from audit_backend.auth import get_request_context
from audit_backend.models import (
    AuditResponse,
    DownloadRequest,
    DownloadResult,
    RequestContext,
    RootResult,
    SearchOptions,
    SearchQueryOptions,
    SearchResult,
)
from audit_backend.services.audit_logs import AuditLogsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/audit", tags=["audit"])


def get_audit_service(request: Request) -> AuditLogsService:
    """Dependency returning the process-wide audit client."""
    return request.app.state.audit_service


class SearchBody(BaseModel):
    query: str
    query_options: SearchQueryOptions = SearchQueryOptions()
    verify_consistency: bool = False


class ResultsBody(BaseModel):
    id: str
    limit: int = 20
    offset: int = 0
    verify_consistency: bool = False


@router.post("/search", response_model=AuditResponse[SearchResult], response_model_exclude_none=True)
async def search(
    body: SearchBody,
    context: RequestContext = Depends(get_request_context),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """
    Search the audit log.

    With `verify_consistency`, every record is checked for membership in
    its root and for consistency against roots published on Arweave.
    """
    logger.debug(f"Audit search by {context.actor_id}: {body.query}")
    return await audit.search(
        body.query,
        body.query_options,
        SearchOptions(verify_consistency=body.verify_consistency),
    )


@router.post("/results", response_model=AuditResponse[SearchResult], response_model_exclude_none=True)
async def results(
    body: ResultsBody,
    context: RequestContext = Depends(get_request_context),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """Page through the results of a previous search."""
    return await audit.results(
        body.id,
        limit=body.limit,
        offset=body.offset,
        options=SearchOptions(verify_consistency=body.verify_consistency),
    )


@router.get("/root", response_model=AuditResponse[RootResult], response_model_exclude_none=True)
async def root(
    size: int = Query(default=0, ge=0),
    context: RequestContext = Depends(get_request_context),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """Current tree root, or the root at a given size."""
    return await audit.root(size)


@router.post(
    "/download_results",
    response_model=AuditResponse[DownloadResult],
    response_model_exclude_none=True,
)
async def download_results(
    body: DownloadRequest,
    context: RequestContext = Depends(get_request_context),
    audit: AuditLogsService = Depends(get_audit_service),
):
    """Request a download URL for the results of a previous search."""
    return await audit.download_results(body)
