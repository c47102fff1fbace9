"""
Published root resolution.

The audit service periodically anchors its tree roots on Arweave. This
module looks those roots up for a set of tree sizes so search results
can be checked against roots the service cannot rewrite, falling back
to the service's own root endpoint for sizes not anchored yet.
"""

import base64
import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from prometheus_client import Counter
from pydantic import ValidationError

from audit_backend.config import settings
from audit_backend.models import Root

logger = logging.getLogger(__name__)

published_roots_resolved = Counter(
    'audit_published_roots_resolved_total',
    'Tree roots resolved for consistency checks',
    ['source']
)

GRAPHQL_QUERY = """
{
    transactions(
        tags: [
            {
                name: "tree_size"
                values: [%(tree_sizes)s]
            },
            {
                name: "tree_name"
                values: [%(tree_name)s]
            }
        ]
    ) {
        edges {
            node {
                id
                tags {
                    name
                    value
                }
            }
        }
    }
}
"""

FetchRoot = Callable[[int], Awaitable[Root]]


def build_graphql_query(tree_name: str, tree_sizes: Iterable[int]) -> str:
    """Transactions tagged with tree_name and any of tree_sizes."""
    return GRAPHQL_QUERY % {
        'tree_sizes': ', '.join(json.dumps(str(size)) for size in tree_sizes),
        'tree_name': json.dumps(tree_name),
    }


def decode_transaction_data(data: str) -> dict:
    """Arweave serves transaction data base64url encoded without padding."""
    padded = data.strip() + '=' * (-len(data.strip()) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


async def _query_transactions(
    client: httpx.AsyncClient,
    base_url: str,
    tree_name: str,
    tree_sizes: List[int]
) -> List[dict]:
    try:
        response = await client.post(
            f"{base_url}/graphql",
            json={"query": build_graphql_query(tree_name, tree_sizes)}
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Arweave GraphQL lookup failed for tree {tree_name}: {e}")
        return []

    return (((data or {}).get('data') or {}).get('transactions') or {}).get('edges') or []


async def _fetch_transaction_root(
    client: httpx.AsyncClient,
    base_url: str,
    node: dict
) -> Optional[Root]:
    tx_id = node.get('id')
    try:
        response = await client.get(f"{base_url}/tx/{tx_id}/data/")
        response.raise_for_status()
        root = Root.model_validate(decode_transaction_data(response.text))
    except (httpx.HTTPError, ValueError, ValidationError) as e:
        logger.error(f"Failed to fetch published root from transaction {tx_id}: {e}")
        return None

    root.transaction_id = tx_id
    return root


async def get_arweave_published_roots(
    tree_name: str,
    tree_sizes: Iterable[int],
    fetch_root: FetchRoot,
    client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None
) -> Dict[int, Root]:
    """
    Resolve the roots of tree_name at each of tree_sizes.

    Args:
        tree_name: Name of the audit tree
        tree_sizes: Sizes whose roots are needed
        fetch_root: Coroutine returning the service's own root for a size,
            used when a size has not been anchored
        client: HTTP client for Arweave; a short-lived one is created if omitted
        base_url: Arweave gateway, defaults to settings.arweave_base_url

    Returns:
        Mapping of tree size to root. Sizes that could not be resolved
        from either source are left out.
    """
    sizes = sorted(set(tree_sizes))
    if not sizes:
        return {}

    base_url = (base_url or settings.arweave_base_url).rstrip('/')
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    published: Dict[int, Root] = {}
    try:
        for edge in await _query_transactions(client, base_url, tree_name, sizes):
            node = edge.get('node') or {}
            tree_size = next(
                (tag.get('value') for tag in node.get('tags', []) if tag.get('name') == 'tree_size'),
                None
            )
            if tree_size is None or not str(tree_size).isdigit():
                logger.warning(f"Transaction {node.get('id')} has no usable tree_size tag")
                continue

            root = await _fetch_transaction_root(client, base_url, node)
            if root is not None:
                published[int(tree_size)] = root
                published_roots_resolved.labels(source='arweave').inc()
    finally:
        if owns_client:
            await client.aclose()

    for size in sizes:
        if size in published:
            continue
        try:
            published[size] = await fetch_root(size)
            published_roots_resolved.labels(source='server').inc()
        except Exception as e:
            logger.error(f"Failed to fetch root of size {size} from the audit service: {e}")
            published_roots_resolved.labels(source='missing').inc()

    return published
