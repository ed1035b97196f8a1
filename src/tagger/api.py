"""Bearer-authenticated REST transport for the Defender and Graph APIs.

ApiClient is deliberately thin: callers decide how a status code is
handled. Only paginated reads convert failures into FetchError, because a
partial inventory must never reach the reconciler.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from .config import DEFAULT_HTTP_TIMEOUT_SECONDS
from .credentials import BearerToken

logger = logging.getLogger(__name__)

NEXT_LINK_KEY = "@odata.nextLink"


class ApiError(Exception):
    """Raised when an API call cannot be completed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FetchError(ApiError):
    """Raised when an inventory read fails; no partial result is returned."""

    pass


def is_success(status_code: int | None) -> bool:
    return status_code is not None and 200 <= status_code < 300


class ApiClient:
    """REST client for one API base URL."""

    def __init__(
        self,
        token: BearerToken,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": token.authorization_header,
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, path: str) -> str:
        if path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    def get_paged(self, path: str) -> list[dict[str, Any]]:
        """Read every page of an OData collection.

        Follows @odata.nextLink until absent. Page size is left to the server.

        Raises:
            FetchError: On any non-2xx status, transport error or malformed page.
        """
        url: str | None = self.url_for(path)
        records: list[dict[str, Any]] = []
        page = 0

        while url:
            page += 1
            try:
                response = self._session.get(url, timeout=self._timeout)
            except requests.RequestException as e:
                raise FetchError(f"Request for page {page} failed: {e}") from e

            if not is_success(response.status_code):
                raise FetchError(
                    f"Page {page} returned HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise FetchError(f"Page {page} did not contain JSON") from e

            if not isinstance(payload, dict) or not isinstance(payload.get("value", []), list):
                raise FetchError(f"Page {page} is not an OData collection")

            records.extend(payload.get("value", []))
            url = payload.get(NEXT_LINK_KEY)

            logger.debug(
                "Fetched page",
                extra={"page": page, "records_so_far": len(records), "has_next": bool(url)},
            )

        return records

    def post_json(self, path: str, body: dict[str, Any]) -> int:
        """POST a JSON body and return the HTTP status code.

        Raises:
            ApiError: If the request could not be sent or no response arrived.
        """
        try:
            response = self._session.post(self.url_for(path), json=body, timeout=self._timeout)
        except requests.RequestException as e:
            raise ApiError(f"POST {path} failed: {e}") from e
        if not is_success(response.status_code):
            logger.debug(
                "POST returned error status",
                extra={"path": path, "status_code": response.status_code},
            )
        return response.status_code

    def delete(self, path: str) -> int:
        """DELETE a resource and return the HTTP status code.

        Raises:
            ApiError: If the request could not be sent or no response arrived.
        """
        try:
            response = self._session.delete(self.url_for(path), timeout=self._timeout)
        except requests.RequestException as e:
            raise ApiError(f"DELETE {path} failed: {e}") from e
        return response.status_code

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
