"""HTTP adapters: fetch the source object, deliver the result.

Both share one pooled ``httpx.Client`` owned by the application; each call
is attempted once. Besides httpx's per-phase timeouts, every exchange is held
to a total deadline of ``http_request_timeout`` seconds, so a peer trickling
bytes cannot pin a worker indefinitely.
"""

import logging
import time
from typing import Optional, Type

import httpx

from .config import Config
from .errors import DeliveryError, FetchError, TransformError

logger = logging.getLogger(__name__)

# httpx raises InvalidURL outside the HTTPError tree, and non-ASCII header
# values surface as UnicodeEncodeError while the request is built.
REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError)


def create_http_client(config: Config, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    """Pooled client with the configured idle pool size and timeouts."""
    return httpx.Client(
        timeout=httpx.Timeout(config.http_request_timeout, connect=config.http_connect_timeout),
        limits=httpx.Limits(max_keepalive_connections=config.http_pool_max_idle),
        transport=transport,
    )


def _deadline(client: httpx.Client) -> Optional[float]:
    total = client.timeout.read
    return None if total is None else time.monotonic() + total


def read_within(response: httpx.Response, deadline: Optional[float], error: Type[TransformError]) -> bytes:
    """Read a streamed body, giving up once ``deadline`` (monotonic) has passed."""
    chunks = []
    for chunk in response.iter_bytes():
        if deadline is not None and time.monotonic() > deadline:
            raise error(f"Response from {response.url.host} exceeded the request deadline")
        chunks.append(chunk)
    return b"".join(chunks)


class ImageFetcher:
    def __init__(self, client: httpx.Client):
        self.client = client

    def fetch(self, url: str) -> bytes:
        """GET the presigned ``url`` and return the body bytes."""
        deadline = _deadline(self.client)
        try:
            with self.client.stream("GET", url) as response:
                if not response.is_success:
                    raise FetchError(f"Source image request failed with HTTP {response.status_code}")
                return read_within(response, deadline, FetchError)
        except REQUEST_ERRORS as e:
            raise FetchError(f"Request error fetching source image: {e}") from e


class DeliveryClient:
    """Writes the transform result to the object-lambda output route."""

    def __init__(self, client: httpx.Client, endpoint: str):
        self.client = client
        self.endpoint = endpoint.rstrip("/")

    def _url(self, route: str) -> str:
        return f"{self.endpoint}/{route.lstrip('/')}"

    def _headers(self, route: str, token: str, status: int) -> dict:
        return {
            "x-amz-request-route": route,
            "x-amz-request-token": token,
            "x-amz-fwd-status": str(status),
        }

    def _post(self, route: str, headers: dict, body: bytes) -> httpx.Response:
        deadline = _deadline(self.client)
        with self.client.stream("POST", self._url(route), headers=headers, content=body) as response:
            read_within(response, deadline, DeliveryError)
            return response

    def deliver(self, route: str, token: str, body: bytes, content_type: str = "image/jpeg") -> int:
        """Upload ``body`` to ``route``; returns the status the output route answered with."""
        headers = self._headers(route, token, 200)
        headers["Content-Type"] = content_type
        try:
            response = self._post(route, headers, body)
        except REQUEST_ERRORS as e:
            raise DeliveryError(f"Failed to send response: {e}") from e
        if not response.is_success:
            raise DeliveryError(f"Error response from output route: HTTP {response.status_code}")
        return response.status_code

    def report_error(self, route: str, token: str, status: int, code: str, message: str) -> bool:
        """Best-effort forwarding of a failure on the output channel."""
        headers = self._headers(route, token, status)
        headers["x-amz-fwd-error-code"] = code
        # Header values must be single-line ASCII.
        safe = " ".join(message.split()).encode("ascii", "replace").decode("ascii")
        headers["x-amz-fwd-error-message"] = safe[:1024]
        try:
            response = self._post(route, headers, b"")
        except (DeliveryError, *REQUEST_ERRORS) as e:
            logger.warning("Could not forward %s to output route: %s", code, e)
            return False
        if not response.is_success:
            logger.warning("Output route rejected %s report: HTTP %d", code, response.status_code)
            return False
        return True
