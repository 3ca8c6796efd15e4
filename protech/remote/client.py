"""HTTP client for the remote shop tables.

Talks to a REST table API (``/rest/v1/<table>``) with ``eq.``/``gte.``/``lte.``
filter syntax. Every request carries the API key and the user's access token,
so row-level security on the backend sees the signed-in principal.

HTTP failures are translated into the protech error taxonomy:

- timeouts, transport errors, 408/429 and 5xx -> ConnectivityError (retryable)
- 401/403 -> PermissionDeniedError
- 400/404/409/422 -> ValidationError
- anything else -> UnknownSyncError
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from protech.config import Settings, validate_backend_url
from protech.errors import (
    ConnectivityError,
    PermissionDeniedError,
    UnknownSyncError,
    ValidationError,
)
from protech.types import format_datetime

from .realtime import PollingSubscription

logger = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    if isinstance(value, datetime):
        return f"eq.{format_datetime(value)}"
    if isinstance(value, (list, tuple, set)):
        return f"in.({','.join(str(v) for v in value)})"
    return f"eq.{value}"


class RemoteClient:
    """Typed access to the remote tables.

    Args:
        backend_url: Base URL of the backend (https, or http to localhost).
        api_key: Project API key sent as ``apikey``.
        access_token: User JWT; falls back to the API key when absent.
        timeout: Per-request timeout in seconds. A timeout is a connectivity error.
        poll_interval: Default interval for change-feed subscriptions.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        backend_url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        *,
        timeout: float = 10.0,
        poll_interval: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        url = validate_backend_url(backend_url)
        if not url:
            raise ValueError(f"Invalid backend URL: {backend_url!r}")
        if not (api_key or access_token):
            raise ValueError("RemoteClient requires an api_key or access_token")

        self.backend_url = url
        self.poll_interval = poll_interval
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token or api_key}",
        }
        if api_key:
            headers["apikey"] = api_key
        self._http = httpx.Client(
            base_url=url + REST_PREFIX,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None
    ) -> "RemoteClient":
        if not settings.backend_url:
            raise ValueError("No backend URL configured")
        return cls(
            settings.backend_url,
            api_key=settings.api_key,
            access_token=settings.access_token,
            timeout=settings.request_timeout,
            poll_interval=settings.poll_interval,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # === Request plumbing ===

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = self._http.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Request to {table} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"Connection to backend failed: {e}") from e
        except httpx.HTTPError as e:
            raise UnknownSyncError(f"HTTP error talking to {table}: {e}") from e

        self._raise_for_status(response, table)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)[:200]
        return str(body)[:200]

    def _raise_for_status(self, response: httpx.Response, table: str) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = f"{table}: HTTP {status} {self._error_message(response)}"
        if status in (401, 403):
            raise PermissionDeniedError(f"Permission denied on {detail}")
        if status in (400, 404, 409, 422):
            raise ValidationError(f"Rejected by backend on {detail}")
        if status in (408, 429) or status >= 500:
            raise ConnectivityError(f"Backend unavailable on {detail}")
        raise UnknownSyncError(f"Unexpected response on {detail}")

    @staticmethod
    def _json_rows(response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        try:
            body = response.json()
        except ValueError as e:
            raise UnknownSyncError(f"Backend returned invalid JSON: {e}") from e
        if isinstance(body, dict):
            return [body]
        return list(body)

    # === Table operations ===

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert or update rows keyed by ``id``. Atomic per request."""
        if not rows:
            return []
        response = self._request(
            "POST",
            table,
            params=[("on_conflict", "id")],
            json=list(rows),
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        logger.debug(f"Upserted {len(rows)} rows into {table}")
        return self._json_rows(response)

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        since_column: str = "updated_at",
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows matching equality filters, optionally bounded on ``since_column``."""
        params: List[Tuple[str, str]] = [("select", "*")]
        for column, value in (filters or {}).items():
            params.append((column, _filter_value(value)))
        if since is not None:
            params.append((since_column, f"gte.{format_datetime(since)}"))
        if until is not None:
            params.append((since_column, f"lte.{format_datetime(until)}"))
        if order_by:
            direction = "desc" if order_by.startswith("-") else "asc"
            params.append(("order", f"{order_by.lstrip('-')}.{direction}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return self._json_rows(self._request("GET", table, params=params))

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        """Hard delete. Refuses an empty filter."""
        if not filters:
            raise ValidationError(f"Refusing unfiltered delete on {table}")
        params = [(column, _filter_value(value)) for column, value in filters.items()]
        response = self._request(
            "DELETE", table, params=params, headers={"Prefer": "return=representation"}
        )
        return len(self._json_rows(response))

    def soft_delete(
        self,
        table: str,
        record_id: str,
        deleted_at: datetime,
        *,
        sync_version: Optional[int] = None,
    ) -> int:
        """Mark a remote row deleted without removing it. Returns rows patched."""
        stamp = format_datetime(deleted_at)
        body: Dict[str, Any] = {"deleted_at": stamp, "updated_at": stamp}
        if sync_version is not None:
            body["sync_version"] = sync_version
        response = self._request(
            "PATCH",
            table,
            params=[("id", f"eq.{record_id}")],
            json=body,
            headers={"Prefer": "return=representation"},
        )
        return len(self._json_rows(response))

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Exact row count via the Content-Range header."""
        params: List[Tuple[str, str]] = [("select", "id"), ("limit", "1")]
        for column, value in (filters or {}).items():
            params.append((column, _filter_value(value)))
        response = self._request("GET", table, params=params, headers={"Prefer": "count=exact"})
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if not total.isdigit():
            raise UnknownSyncError(f"Backend did not return a row count for {table}")
        return int(total)

    def health_check(self) -> bool:
        """True when the backend answers at all (auth errors still mean reachable)."""
        try:
            response = self._http.get("/")
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.status_code < 500

    def subscribe(
        self,
        table: str,
        filters: Dict[str, Any],
        on_event,
        *,
        interval: Optional[float] = None,
    ) -> PollingSubscription:
        """Start a polling change feed for ``table`` and return its handle."""
        subscription = PollingSubscription(
            self, table, filters, on_event, interval=interval or self.poll_interval
        )
        subscription.start()
        return subscription

