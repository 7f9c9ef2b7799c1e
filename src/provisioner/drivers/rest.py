"""Authenticated REST client for Microsoft Graph and SharePoint.

Tokens come from an azure-identity credential and are cached until shortly
before expiry. Throttling (429) and gateway errors are retried with
Retry-After or exponential backoff; everything else is translated into the
driver error taxonomy so drivers never see raw HTTP status codes.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

import requests
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError

from ..config import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    MAX_REQUEST_RETRIES,
    RETRY_BACKOFF_BASE_SECONDS,
)
from .base import (
    DriverError,
    DuplicateResourceError,
    PermanentDriverError,
    ResourceNotFoundError,
    TransientDriverError,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
SHAREPOINT_URL_TEMPLATE = "https://{tenant}.sharepoint.com"

# Refresh tokens this long before they expire
TOKEN_REFRESH_BUFFER_SECONDS = 300

RETRYABLE_STATUS_CODES = frozenset({429, 503, 504})

# Error codes and message fragments that mean "already exists"
DUPLICATE_ERROR_CODES = frozenset(
    {
        "ObjectConflict",
        "Request_MultipleObjectsWithSameKeyValue",
        "Conflict",
        "NameAlreadyExists",
    }
)
DUPLICATE_MESSAGE_FRAGMENTS = ("already exist", "another object with the same value")


def _error_details(response: requests.Response) -> tuple[str, str]:
    """Extract (code, message) from a Graph or SharePoint error body."""
    try:
        body = response.json()
    except ValueError:
        return "", (response.text or "").strip()[:500]

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        code = str(error.get("code", ""))
        message = error.get("message", "")
        # SharePoint verbose errors nest the text one level deeper
        if isinstance(message, dict):
            message = message.get("value", "")
        return code, str(message)
    if isinstance(body, dict) and "odata.error" in body:
        odata_error = body["odata.error"]
        return str(odata_error.get("code", "")), str(odata_error.get("message", {}).get("value", ""))
    return "", str(body)[:500]


def classify_response(response: requests.Response, context: str) -> DriverError:
    """Map a failed HTTP response to a DriverError.

    Args:
        response: Response with a non-success status.
        context: Operation description for the message ("GET /users/x").

    Returns:
        The error to raise (not raised here).
    """
    status = response.status_code
    code, message = _error_details(response)
    text = f"{context} failed ({status}"
    text += f" {code}): {message}" if code else f"): {message}"

    if status == 404:
        return ResourceNotFoundError(text, status_code=status)
    lowered = message.lower()
    if (
        status == 409
        or code in DUPLICATE_ERROR_CODES
        or any(fragment in lowered for fragment in DUPLICATE_MESSAGE_FRAGMENTS)
    ):
        return DuplicateResourceError(text, status_code=status)
    if status == 429 or status >= 500:
        return TransientDriverError(text, status_code=status)
    return PermanentDriverError(text, status_code=status)


class RestClient:
    """Thin JSON-over-HTTPS client bound to one API base URL and scope.

    Thread-safe: the token cache is guarded by a lock and requests.Session
    is shared across worker threads for connection pooling.
    """

    def __init__(
        self,
        credential: TokenCredential,
        base_url: str,
        scope: str,
        *,
        session: requests.Session | None = None,
        timeout: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_retries: int = MAX_REQUEST_RETRIES,
        default_headers: dict[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._credential = credential
        self.base_url = base_url.rstrip("/")
        self._scope = scope
        self._session = session or requests.Session()
        self._timeout = timeout
        self._max_retries = max_retries
        self._default_headers = {"Accept": "application/json", **(default_headers or {})}
        self._sleep = sleep

        self._token: str | None = None
        self._token_expires_on = 0
        self._token_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"RestClient({self.base_url})"

    # =========================================================================
    # Token management
    # =========================================================================

    def _access_token(self) -> str:
        with self._token_lock:
            now = int(time.time())
            if self._token and now < self._token_expires_on - TOKEN_REFRESH_BUFFER_SECONDS:
                return self._token
            try:
                token = self._credential.get_token(self._scope)
            except ClientAuthenticationError as e:
                raise PermanentDriverError(f"Authentication for {self._scope} failed: {e}") from e
            self._token = token.token
            self._token_expires_on = token.expires_on
            logger.debug(
                "Acquired access token",
                extra={"scope": self._scope, "expires_on": token.expires_on},
            )
            return self._token

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_on = 0

    # =========================================================================
    # Requests
    # =========================================================================

    def url(self, path: str) -> str:
        if path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """Send a request and return the successful response.

        Retries throttling and gateway errors, and refreshes the token once
        on 401.

        Raises:
            DriverError: Classified failure once retries are exhausted.
        """
        url = self.url(path)
        context = f"{method} {path.split('?', 1)[0]}"
        refreshed = False
        attempt = 1

        # The single token refresh on 401 does not count as a retry
        while True:
            request_headers = {
                **self._default_headers,
                "Authorization": f"Bearer {self._access_token()}",
                **(headers or {}),
            }
            try:
                response = self._session.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=request_headers,
                    timeout=self._timeout,
                )
            except requests.RequestException as e:
                if attempt > self._max_retries:
                    raise TransientDriverError(f"{context} failed: {e}") from e
                self._backoff(context, attempt, None, str(e))
                attempt += 1
                continue

            if response.status_code < 400:
                return response

            if response.status_code == 401 and not refreshed:
                refreshed = True
                self._invalidate_token()
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt <= self._max_retries:
                self._backoff(context, attempt, response, f"HTTP {response.status_code}")
                attempt += 1
                continue

            raise classify_response(response, context)

    def _backoff(
        self,
        context: str,
        attempt: int,
        response: requests.Response | None,
        reason: str,
    ) -> None:
        delay: float | None = None
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    delay = float(retry_after)
                except ValueError:
                    delay = None
        if delay is None:
            # Exponential backoff with jitter
            backoff = RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
            delay = backoff + random.uniform(0, backoff * 0.2)

        logger.warning(
            "Request throttled or failed, retrying",
            extra={
                "request": context,
                "attempt": attempt,
                "max_retries": self._max_retries,
                "reason": reason,
                "delay_seconds": round(delay, 2),
            },
        )
        self._sleep(delay)

    def get(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._json(self.request("GET", path, **kwargs))

    def post(self, path: str, body: Any = None, **kwargs: Any) -> requests.Response:
        return self.request("POST", path, json=body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs: Any) -> requests.Response:
        return self.request("PUT", path, json=body, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> requests.Response:
        return self.request("DELETE", path, **kwargs)

    def get_optional(self, path: str, **kwargs: Any) -> dict[str, Any] | None:
        """GET that returns None on 404 instead of raising."""
        try:
            return self.get(path, **kwargs)
        except ResourceNotFoundError:
            return None

    def list_values(self, path: str, **kwargs: Any) -> list[dict[str, Any]]:
        """GET a collection, following @odata.nextLink pages."""
        items: list[dict[str, Any]] = []
        page: dict[str, Any] | None = self.get(path, **kwargs)
        while page is not None:
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            page = self.get(next_link) if next_link else None
        return items

    @staticmethod
    def _json(response: requests.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise PermanentDriverError(
                f"Unexpected non-JSON response from {response.url}",
                status_code=response.status_code,
            ) from e
        return data if isinstance(data, dict) else {"value": data}


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter expression."""
    return "'" + value.replace("'", "''") + "'"


def graph_client(credential: TokenCredential, **kwargs: Any) -> RestClient:
    """Client for Microsoft Graph v1.0."""
    return RestClient(credential, GRAPH_BASE_URL, GRAPH_SCOPE, **kwargs)


def sharepoint_client(credential: TokenCredential, tenant: str, **kwargs: Any) -> RestClient:
    """Client for the SharePoint REST API of a tenant."""
    base_url = SHAREPOINT_URL_TEMPLATE.format(tenant=tenant)
    return RestClient(
        credential,
        base_url,
        f"{base_url}/.default",
        default_headers={"Accept": "application/json;odata=nometadata"},
        **kwargs,
    )
