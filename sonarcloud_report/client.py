"""SonarCloud API client.

Usage:
    client = SonarClient(token="squ_xxx")
    data   = client.get("/measures/component", {"component": "my-project"})
"""

import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from sonarcloud_report import __version__

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://sonarcloud.io/api"
DEFAULT_TIMEOUT = 30
RETRY_ATTEMPTS = 3
RETRY_STATUSES = (429, 500, 502, 503, 504)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SonarClientError(Exception):
    """Base exception for all client errors.

    Carries the HTTP status (``None`` for transport failures), the start of
    the response body and a list of suggested actions for the CLI.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        suggestions: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.suggestions = suggestions


class AuthenticationError(SonarClientError):
    """Raised on HTTP 401: invalid or expired token."""


class PermissionDeniedError(SonarClientError):
    """Raised on HTTP 403: token lacks access to the project."""


class NotFoundError(SonarClientError):
    """Raised on HTTP 404: project, PR or resource not found."""


class RateLimitError(SonarClientError):
    """Raised on HTTP 429 once retries are exhausted."""


class NetworkError(SonarClientError):
    """Raised on connection timeout or unreachable server."""


class ResponseFormatError(SonarClientError):
    """Raised when a response is not JSON or does not have the expected shape."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SonarClient:
    """Thin wrapper around the SonarCloud Web API."""

    def __init__(
        self,
        url: str = DEFAULT_BASE_URL,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = RETRY_ATTEMPTS,
    ) -> None:
        self.base_url = url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": f"sonarcloud-report/{__version__}",
        })
        retry = Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=frozenset({"GET"}),
            respect_retry_after_header=True,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def get(self, endpoint: str, params: dict[str, Any] | None = None, *, cancel=None) -> dict:
        """Perform a single GET request and return the parsed JSON response.

        *cancel* is an optional :class:`~sonarcloud_report.cancellation.CancellationToken`;
        it is checked before the request is sent and again once the response
        arrives, so a cancelled run never consumes a late response.

        Raises:
            AuthenticationError:   HTTP 401
            PermissionDeniedError: HTTP 403
            NotFoundError:         HTTP 404
            RateLimitError:        HTTP 429
            SonarClientError:      Any other non-2xx response
            NetworkError:          Timeout, connection or other transport failure
            ResponseFormatError:   Body is not a JSON object
            ReportCancelled:       *cancel* was triggered
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        data = self._request(endpoint, params or {})
        if cancel is not None:
            cancel.raise_if_cancelled()
        return data

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _request(self, endpoint: str, params: dict[str, Any]) -> dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        logger.debug("GET %s %s", url, params)
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.exceptions.Timeout as exc:
            raise NetworkError(
                f"Request timed out after {self._timeout}s while contacting '{url}'"
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise NetworkError(
                f"Unable to reach SonarCloud at '{self.base_url}'"
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise NetworkError(f"Request to '{url}' failed: {exc}") from exc

        if not response.ok:
            raise _error_for(response, url)

        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError(
                f"Response from {url} is not valid JSON",
                status_code=response.status_code,
                body=response.text[:200],
            ) from exc
        if not isinstance(data, dict):
            raise ResponseFormatError(
                f"Response from {url} is not a JSON object",
                status_code=response.status_code,
                body=response.text[:200],
            )
        return data


def _error_for(response: requests.Response, url: str) -> SonarClientError:
    """Map a non-2xx response to the matching exception."""
    status = response.status_code
    body = response.text[:200]

    if status == 401:
        return AuthenticationError(
            "Authentication failed: check that your token is valid and not expired.",
            status_code=status,
            body=body,
            suggestions=(
                "Generate a new token at https://sonarcloud.io/account/security/",
                "Set the SONARCLOUD_TOKEN environment variable",
            ),
        )
    if status == 403:
        return PermissionDeniedError(
            f"Access denied to {url}",
            status_code=status,
            body=body,
            suggestions=(
                "Ensure your token has access to this project",
                "Contact your SonarCloud organization administrator",
            ),
        )
    if status == 404:
        return NotFoundError(
            f"Resource not found: {url}",
            status_code=status,
            body=body,
            suggestions=(
                "Check the project key in the SonarCloud project settings",
                "Set the correct key: export SONARCLOUD_PROJECT_KEY=<key>",
            ),
        )
    if status == 429:
        return RateLimitError(
            "SonarCloud API rate limit exceeded",
            status_code=status,
            body=body,
            suggestions=("Wait a few minutes before retrying",),
        )

    detail = body
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            detail = str(errors[0].get("msg", detail))
        elif isinstance(payload.get("message"), str):
            detail = payload["message"]
    return SonarClientError(
        f"Unexpected response {status} from {url}: {detail}",
        status_code=status,
        body=body,
    )
