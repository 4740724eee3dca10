"""HTTP helpers shared by the source adapters.

Maps transport failures and response status codes onto the error
taxonomy the resilience pipeline understands:

    timeout / connection error      → TransientSourceError
    408, 429, 5xx                   → TransientSourceError (+ Retry-After)
    any other non-2xx               → PermanentSourceError
    2xx with an unreadable body     → PermanentSourceError
    result lists of the wrong shape → PermanentSourceError (object_list)
"""

from __future__ import annotations

from typing import Any

import httpx

from src.utils.errors import PermanentSourceError, TransientSourceError, ValidationError

MAX_PAGE_SIZE = 100
_TRANSIENT_STATUSES = frozenset({408, 429})


def validate_search(query: str, page_size: int, provider_name: str) -> str:
    """Return the trimmed query, or raise ValidationError for bad search input."""
    trimmed = (query or "").strip()
    if not trimmed:
        raise ValidationError(message="Search query must not be empty", provider_name=provider_name)
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(
            message=f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}",
            provider_name=provider_name,
        )
    return trimmed


def parse_retry_after(response: httpx.Response) -> float | None:
    """Return the ``Retry-After`` header in seconds, or ``None``.

    Only the delta-seconds form is honoured; an HTTP-date is ignored.
    """
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def classify_response(response: httpx.Response, provider_name: str) -> None:
    """Raise the matching source error for a non-2xx *response*."""
    status = response.status_code
    if 200 <= status < 300:
        return
    if status in _TRANSIENT_STATUSES or status >= 500:
        raise TransientSourceError(
            message=f"HTTP {status} from {provider_name}",
            provider_name=provider_name,
            status_code=status,
            retry_after=parse_retry_after(response),
        )
    raise PermanentSourceError(
        message=f"HTTP {status} from {provider_name}",
        provider_name=provider_name,
        status_code=status,
    )


async def request_json(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    provider_name: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one request and return the decoded JSON object.

    Extra keyword arguments (``params``, ``headers``, ``data``, ``auth``,
    ``timeout``) are passed to ``httpx.AsyncClient.request`` unchanged.
    """
    try:
        response = await http.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientSourceError(
            message=f"Request to {provider_name} timed out",
            provider_name=provider_name,
        ) from exc
    except httpx.TransportError as exc:
        raise TransientSourceError(
            message=f"Connection to {provider_name} failed: {exc}",
            provider_name=provider_name,
        ) from exc

    classify_response(response, provider_name)

    try:
        body = response.json()
    except ValueError as exc:
        raise PermanentSourceError(
            message=f"Malformed JSON from {provider_name}",
            provider_name=provider_name,
            status_code=response.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise PermanentSourceError(
            message=f"Unexpected payload shape from {provider_name}",
            provider_name=provider_name,
            status_code=response.status_code,
        )
    return body


def validate_external_id(external_id: str, provider_name: str) -> str:
    """Return the trimmed id, or raise ValidationError for a blank one."""
    trimmed = (external_id or "").strip()
    if not trimmed:
        raise ValidationError(message="External id must not be empty", provider_name=provider_name)
    return trimmed


def object_list(body: dict[str, Any], *path: str, provider_name: str) -> list[dict[str, Any]]:
    """Return the list of JSON objects found at *path* inside *body*.

    A missing key anywhere along the path means no results.  A value of
    the wrong type is a malformed response and raises PermanentSourceError.
    Null entries are dropped.
    """
    node: Any = body
    for key in path:
        if node is None:
            return []
        if not isinstance(node, dict):
            raise _shape_error(provider_name, path)
        node = node.get(key)
    if node is None:
        return []
    if not isinstance(node, list):
        raise _shape_error(provider_name, path)
    items = [item for item in node if item]
    if not all(isinstance(item, dict) for item in items):
        raise _shape_error(provider_name, path)
    return items


def _shape_error(provider_name: str, path: tuple[str, ...]) -> PermanentSourceError:
    return PermanentSourceError(
        message=f"Unexpected shape at {'.'.join(path)} from {provider_name}",
        provider_name=provider_name,
    )
