"""
Base API client and error types for the Shelf Sync Service.
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


@dataclass
class APIError(Exception):
    """Custom exception for API errors."""
    message: str
    status_code: Optional[int] = None
    response_data: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if self.status_code:
            return f"API Error {self.status_code}: {self.message}"
        return f"API Error: {self.message}"


class AuthError(APIError):
    """No usable session (not logged in, invalid cookie)."""


class UnauthorizedError(APIError):
    """The server rejected the session (401/403)."""


class NetworkError(APIError):
    """Connection problems and timeouts. Usually transient."""


class ServerError(APIError):
    """The server answered with an error or an unusable payload."""


class NotFoundError(APIError):
    """The requested resource does not exist (404)."""


class CacheError(APIError):
    """Local cache read or write failed."""


class ValidationError(APIError):
    """The request was rejected before reaching the server."""


def is_auth_failure(error: BaseException) -> bool:
    """Failures the auth layer recovers from (redirect to login)."""
    return isinstance(error, (AuthError, UnauthorizedError))


class BaseClient:
    """
    Base class for API clients with common functionality.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        retry_backoff_factor: float = 0.5,
        user_agent: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        # Create session with retry strategy
        self.session = requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=retry_backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            respect_retry_after_header=True,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint."""
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint or absolute URL
            **kwargs: Additional arguments for requests

        Returns:
            Response JSON data

        Raises:
            UnauthorizedError: On 401/403 responses
            NotFoundError: On 404 responses
            ServerError: On any other error status
            NetworkError: If the server could not be reached
        """
        url = self._build_url(endpoint)

        # Set default timeout
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise NetworkError(f"Connection error: {str(e)}")
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed: {str(e)}")

        # Check for HTTP errors
        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"error": response.text}
            if not isinstance(error_data, dict):
                error_data = {"error": str(error_data)}

            message = error_data.get("error") or response.reason or response.text
            if response.status_code in (401, 403):
                error_cls = UnauthorizedError
            elif response.status_code == 404:
                error_cls = NotFoundError
            else:
                error_cls = ServerError
            raise error_cls(
                message=message,
                status_code=response.status_code,
                response_data=error_data,
            )

        # Return JSON if possible
        try:
            return response.json()
        except ValueError:
            return {"data": response.text}

    def get(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a GET request."""
        return self._request("GET", endpoint, **kwargs)

    def post(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make a POST request."""
        return self._request("POST", endpoint, **kwargs)

    def close(self) -> None:
        """Close the session."""
        self.session.close()
