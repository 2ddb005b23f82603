"""HTTP transport between a replica and the sync server."""

import asyncio
import uuid
from typing import Optional

import httpx

from common.exceptions import Blocked, InvalidDocument, Throttled, TransportError
from common.logging_config import get_logger
from common.protocol import SyncRequest, SyncResponse
from replica.config import Config

logger = get_logger(__name__)


DEFAULT_RETRY_AFTER = 1.0


def _retry_after_seconds(response: httpx.Response, body: dict) -> float:
    """
    Seconds to wait from a Retry-After header in delay form.

    HTTP-date headers and missing values fall back to the body's retryAfter,
    then to a one second wait.
    """
    for candidate in (response.headers.get("Retry-After"), body.get("retryAfter")):
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            return max(0.0, float(candidate))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparseable Retry-After value {candidate!r}")
    return DEFAULT_RETRY_AFTER


class HttpTransport:
    """Async HTTP client for the sync API with retry logic and error handling."""

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the transport.

        Args:
            config: Replica configuration
            client: Preconfigured client, mainly for tests
        """
        self.config = config
        self.client = client or httpx.AsyncClient(
            base_url=config.get_base_url(),
            timeout=config.get_timeout()
        )
        logger.info(f"Initialized HttpTransport [base_url={config.get_base_url()}]")

    async def close(self) -> None:
        await self.client.aclose()

    def _headers(self, request_id: str) -> dict:
        headers = {"X-Request-ID": request_id}
        token = self.config.get_api_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request_with_retry(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Make HTTP request with retry logic on 5xx errors and network failures.

        Raises:
            TransportError: If max retries are exceeded or the connection fails
        """
        retry_config = self.config.get_retry_config()
        max_retries = retry_config['max_retries']
        backoff = retry_config['retry_backoff_multiplier']

        request_id = str(uuid.uuid4())
        kwargs['headers'] = self._headers(request_id)

        logger.debug(f"Making request: {method} {endpoint} [request_id={request_id}]")

        last_exception: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            try:
                response = await self.client.request(method, endpoint, **kwargs)

                logger.debug(
                    f"Response received: {method} {endpoint} status={response.status_code} "
                    f"[request_id={request_id}]"
                )

                if response.status_code >= 500 and attempt < max_retries:
                    delay = backoff ** attempt
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} status={response.status_code}, retrying in {delay}s "
                        f"[request_id={request_id}]"
                    )
                    await asyncio.sleep(delay)
                    continue

                return response

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_exception = e
                if attempt < max_retries:
                    delay = backoff ** attempt
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} error={type(e).__name__}, retrying in {delay}s "
                        f"[request_id={request_id}]"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    f"Network error (max retries exceeded): {method} {endpoint} error={e} "
                    f"[request_id={request_id}]"
                )

        if isinstance(last_exception, httpx.TimeoutException):
            raise TransportError("Request timed out. Server may be overloaded.") from last_exception
        raise TransportError("Cannot connect to sync server. Is it running?") from last_exception

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        detail = body.get("detail", response.text)
        code = body.get("code")
        retry_after = _retry_after_seconds(response, body)

        if response.status_code == 429:
            raise Throttled(retry_after, detail)
        if response.status_code == 403 and code == "BLOCKED":
            raise Blocked(retry_after, detail)
        raise TransportError(f"Sync server returned {response.status_code} ({code}): {detail}")

    def _parse(self, response: httpx.Response) -> SyncResponse:
        self._raise_for_status(response)
        try:
            return SyncResponse.from_dict(response.json())
        except (ValueError, InvalidDocument) as e:
            raise TransportError(f"Malformed sync response: {e}") from e

    async def exchange(self, collection: str, request: SyncRequest) -> SyncResponse:
        """
        Send local changes and receive server changes.

        Raises:
            Throttled: Server asked the replica to back off
            Blocked: Actor is blocked on the server
            TransportError: Network failure or unexpected status
        """
        response = await self._request_with_retry(
            "POST", f"/sync/{collection}", json=request.to_dict()
        )
        return self._parse(response)
