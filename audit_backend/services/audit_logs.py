"""
Secure audit log client.

Builds tamper-evident events from the caller's context, submits them to
the audit log service and verifies what comes back: envelope hashes,
event signatures, and Merkle membership/consistency proofs against both
the service's roots and the roots it published on Arweave.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

import httpx
from prometheus_client import Counter, Histogram

from audit_backend.config import Settings, settings as default_settings
from audit_backend.crypto import (
    EventHashMismatch,
    canonicalize_event,
    canonicalize_json,
    event_order_and_stringify_subfields,
)
from audit_backend.models import (
    AuditResponse,
    AuditSession,
    DownloadRequest,
    DownloadResult,
    Event,
    EventEnvelope,
    LogBulkRequest,
    LogBulkResult,
    LogData,
    LogOptions,
    LogResult,
    ResultsRequest,
    Root,
    RootRequest,
    RootResult,
    SearchOptions,
    SearchQueryOptions,
    SearchRequest,
    SearchResult,
)
from audit_backend.services.arweave import get_arweave_published_roots
from audit_backend.services.verification import (
    verify_log_consistency_proof,
    verify_log_hash,
    verify_log_membership_proof,
    verify_record_consistency_proof,
    verify_record_membership_proof,
    verify_signature,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Prometheus metrics
audit_requests = Counter(
    'audit_log_requests_total',
    'Requests sent to the audit log service',
    ['endpoint', 'status']
)
audit_request_duration = Histogram(
    'audit_log_request_seconds',
    'Audit log service request duration',
    ['endpoint']
)
audit_verifications = Counter(
    'audit_log_verifications_total',
    'Verification verdicts on audit log responses',
    ['check', 'verdict']
)


class AuditRequestError(Exception):
    """Raised when a call cannot be made or its response cannot be read."""
    pass


def create_audit_http_client(config: Settings) -> httpx.AsyncClient:
    """HTTP client bound to the audit log service."""
    return httpx.AsyncClient(
        base_url=config.audit_log_api_host,
        headers={
            "Authorization": f"Bearer {config.audit_log_api_token}",
            "Content-Type": "application/json",
        },
        timeout=config.http_timeout_seconds,
        follow_redirects=config.http_max_redirects > 0,
        max_redirects=config.http_max_redirects,
    )


def _record_verdict(check: str, verdict: Optional[bool]) -> None:
    if verdict is None:
        return
    audit_verifications.labels(check=check, verdict='pass' if verdict else 'fail').inc()
    if not verdict:
        logger.warning(f"Audit {check} verification failed")


class AuditLogsService:
    """
    Client for the secure audit log service.

    One instance is shared by the process; caller state (identity and the
    last unpublished root seen) travels in the AuditSession passed to
    each call that needs it.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        arweave_client: Optional[httpx.AsyncClient] = None
    ):
        self.client = client
        self.settings = settings or default_settings
        self.arweave_client = arweave_client

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        result_type: Type[T]
    ) -> AuditResponse[T]:
        with audit_request_duration.labels(endpoint=endpoint).time():
            response = await self.client.post(endpoint, json=payload)

        audit_requests.labels(endpoint=endpoint, status=str(response.status_code)).inc()
        if response.status_code >= 500:
            response.raise_for_status()

        try:
            body = response.json()
        except ValueError:
            response.raise_for_status()
            raise AuditRequestError(f"Non-JSON response from {endpoint}")

        if not isinstance(body, dict):
            response.raise_for_status()
            raise AuditRequestError(f"Unexpected response from {endpoint}")

        # Only a service envelope reporting a failure is returned as a response
        if response.status_code >= 400 and body.get("status") in (None, "Success"):
            response.raise_for_status()

        if body.get("status", "Success") != "Success":
            logger.warning(
                f"Audit service rejected {endpoint}: "
                f"status={body.get('status')} summary={body.get('summary')}"
            )
            errors = body.get("result")
            return AuditResponse[result_type].model_validate({**body, "result": None, "errors": errors})

        return AuditResponse[result_type].model_validate(body)

    # ------------------------------------------------------------------
    # Event construction
    # ------------------------------------------------------------------

    def _get_log_event(
        self,
        session: AuditSession,
        event: Union[Event, Mapping[str, Any]],
        options: LogOptions
    ) -> LogData:
        if isinstance(event, Event):
            data = event.model_dump(exclude_none=True)
        else:
            data = dict(event)

        context = session.context
        data["tenant_id"] = context.organization_id
        data["actor"] = context.actor_id
        data["source"] = context.source()
        if self.settings.audit_log_service_name:
            data["service_name"] = self.settings.audit_log_service_name

        ordered = event_order_and_stringify_subfields(data)
        log_data = LogData(event=ordered, config_id=self.settings.audit_log_config_id)

        if options.signer is not None:
            signer = options.signer
            public_key_info: Dict[str, Any] = dict(options.public_key_info or {})
            public_key_info["key"] = signer.get_public_key()
            public_key_info["algorithm"] = signer.get_algorithm()

            log_data.signature = signer.sign(canonicalize_event(ordered))
            log_data.public_key = canonicalize_json(public_key_info)

        return log_data

    def _set_request_fields(
        self,
        session: AuditSession,
        data: LogData,
        options: LogOptions
    ) -> None:
        if options.verbose:
            data.verbose = options.verbose

        if options.verify:
            data.verbose = True
            if session.prev_unpublished_root_hash is not None:
                data.prev_root = session.prev_unpublished_root_hash

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_hash(self, envelope: Optional[EventEnvelope], hash: Optional[str]) -> None:
        """
        Raise EventHashMismatch if the envelope does not hash to hash.

        Does nothing when either is missing (non-verbose responses).
        """
        if envelope is None or hash is None:
            return

        if not verify_log_hash(envelope, hash):
            audit_verifications.labels(check='hash', verdict='fail').inc()
            logger.error(f"Event hash verification failed for hash {hash}")
            raise EventHashMismatch(hash, envelope.model_dump_json(exclude_none=True))

    def process_log_response(
        self,
        session: AuditSession,
        result: LogResult,
        options: LogOptions
    ) -> None:
        new_unpublished_root_hash = result.unpublished_root

        if not options.skip_event_verification:
            self.verify_hash(result.envelope, result.hash)
            result.signature_verification = verify_signature(result.envelope)
            _record_verdict('signature', result.signature_verification)

        if options.verify:
            result.membership_verification = verify_log_membership_proof(
                result, new_unpublished_root_hash
            )
            result.consistency_verification = verify_log_consistency_proof(
                result,
                new_unpublished_root_hash,
                session.prev_unpublished_root_hash,
            )
            _record_verdict('membership', result.membership_verification)
            _record_verdict('consistency', result.consistency_verification)

        session.advance_root(new_unpublished_root_hash)

    async def process_search_response(
        self,
        response: AuditResponse[SearchResult],
        options: SearchOptions
    ) -> AuditResponse[SearchResult]:
        """Verify every record of a search/results page in place."""
        if not response.success or response.result is None:
            return response

        result = response.result

        if not options.skip_event_verification:
            for record in result.events:
                self.verify_hash(record.envelope, record.hash)
                record.signature_verification = verify_signature(record.envelope)
                _record_verdict('signature', record.signature_verification)

        if options.verify_consistency:
            published_roots: Dict[int, Root] = {}
            local_root = result.root

            if local_root is not None:
                tree_sizes = {local_root.size}
                for record in result.events:
                    if record.leaf_index is not None:
                        tree_sizes.add(record.leaf_index + 1)
                        if record.leaf_index > 0:
                            tree_sizes.add(record.leaf_index)

                published_roots = await get_arweave_published_roots(
                    local_root.tree_name,
                    tree_sizes,
                    self._fetch_root,
                    client=self.arweave_client,
                    base_url=self.settings.arweave_base_url,
                )
                local_root = published_roots.get(local_root.size, local_root)

            for record in result.events:
                root = local_root if record.published else result.unpublished_root
                record.membership_verification = verify_record_membership_proof(record, root)
                record.consistency_verification = verify_record_consistency_proof(
                    record, published_roots
                )
                _record_verdict('membership', record.membership_verification)
                _record_verdict('consistency', record.consistency_verification)

        return response

    async def _fetch_root(self, size: int) -> Root:
        response = await self.root(size)
        if not response.success or response.result is None:
            raise AuditRequestError(f"Root of size {size} unavailable: {response.summary}")
        return response.result.data

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def log(
        self,
        session: AuditSession,
        event: Union[Event, Mapping[str, Any]],
        options: Optional[LogOptions] = None
    ) -> AuditResponse[LogResult]:
        """
        Create a log entry in the secure audit log (POST v1/log).

        Args:
            session: Caller context and root chaining state
            event: The auditable activity. actor, tenant_id, source and
                service_name are filled in from the session and settings.
            options: verbose, verify, skip_event_verification, signer,
                public_key_info

        Returns:
            The service response, its result carrying verification verdicts

        Raises:
            EventHashMismatch: If the returned envelope does not match its hash
            httpx.HTTPError: On transport failures and 5xx responses
        """
        options = options or LogOptions()
        data = self._get_log_event(session, event, options)
        self._set_request_fields(session, data, options)

        response = await self._post('v1/log', data.model_dump(exclude_none=True), LogResult)

        if response.success and response.result is not None:
            self.process_log_response(session, response.result, options)
        return response

    async def log_bulk(
        self,
        session: AuditSession,
        events: List[Union[Event, Mapping[str, Any]]],
        options: Optional[LogOptions] = None
    ) -> AuditResponse[LogBulkResult]:
        """
        Create multiple log entries (POST v2/log).

        The bulk endpoint never returns proofs, so verify is always off.
        An empty list returns an empty result without calling the service.
        """
        options = (options or LogOptions()).model_copy(update={"verify": False})

        if not events:
            return AuditResponse[LogBulkResult](result=LogBulkResult())

        request = LogBulkRequest(
            events=[self._get_log_event(session, event, options) for event in events],
            verbose=options.verbose,
        )

        response = await self._post('v2/log', request.model_dump(exclude_none=True), LogBulkResult)

        if response.success and response.result is not None:
            for result in response.result.results:
                self.process_log_response(session, result, options)
        return response

    async def search(
        self,
        query: str,
        query_options: Optional[SearchQueryOptions] = None,
        options: Optional[SearchOptions] = None
    ) -> AuditResponse[SearchResult]:
        """
        Search the audit log (POST v1/search).

        Defaults to limit=20, order=desc, order_by=received_at; any field
        set in query_options wins. verify_consistency forces a verbose
        response so proofs are returned.
        """
        options = options or SearchOptions()
        overrides = query_options.model_dump(exclude_none=True) if query_options else {}
        request = SearchRequest(query=query, **overrides)

        if options.verify_consistency:
            request.verbose = True

        response = await self._post('v1/search', request.model_dump(exclude_none=True), SearchResult)
        return await self.process_search_response(response, options)

    async def results(
        self,
        id: str,
        limit: int = 20,
        offset: int = 0,
        options: Optional[SearchOptions] = None
    ) -> AuditResponse[SearchResult]:
        """Fetch a page of a previous search (POST v1/results)."""
        if not id:
            raise AuditRequestError("Search id is required")

        options = options or SearchOptions()
        request = ResultsRequest(id=id, limit=limit, offset=offset)

        response = await self._post('v1/results', request.model_dump(), SearchResult)
        return await self.process_search_response(response, options)

    async def root(self, size: int = 0) -> AuditResponse[RootResult]:
        """Current tree root, or the root at a past size when size > 0 (POST v1/root)."""
        request = RootRequest(tree_size=size if size > 0 else None)
        return await self._post('v1/root', request.model_dump(exclude_none=True), RootResult)

    async def log_stream(self, data: Dict[str, Any]) -> AuditResponse[Dict[str, Any]]:
        """Forward a vendor log-stream payload as is (POST v1/log_stream)."""
        return await self._post('v1/log_stream', data, Dict[str, Any])

    async def download_results(self, request: DownloadRequest) -> AuditResponse[DownloadResult]:
        """Ask for a download URL for a previous search (POST v1/download_results)."""
        return await self._post(
            'v1/download_results', request.model_dump(exclude_none=True), DownloadResult
        )
