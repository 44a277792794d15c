"""
HTTP classifier adapter.

Posts a file to a describe-style classification endpoint and normalizes the
response.
"""

from typing import Any, Optional

import httpx
import structlog

from credit_batcher.config import BatcherConfig, get_config
from credit_batcher.errors import AuthError, ProviderTimeoutError, UnknownProviderError
from credit_batcher.worker.interface import WorkerInterface, classify_status

logger = structlog.get_logger(__name__)


class HttpClassifierAdapter(WorkerInterface):
    """
    Classification over HTTP.

    Sends the payload as multipart ``image_file`` with an ``Api-Key`` header
    and expects a JSON body with either ``descriptions[0].text`` or
    ``description``.
    """

    name = "http"

    def __init__(
        self,
        config: Optional[BatcherConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the adapter.

        Args:
            config: Batcher configuration. Uses global config if not provided.
            client: Preconfigured HTTP client (mainly for tests)
        """
        self.config = config or get_config()
        self.url = self.config.provider_url
        self.api_key = self.config.provider_api_key
        self._client = client
        self._owns_client = client is None

    @property
    def headers(self) -> dict:
        """Get request headers with API key."""
        return {"Api-Key": self.api_key or ""}

    async def connect(self) -> None:
        """Create the HTTP client."""
        if self._client is not None:
            return

        if not self.api_key:
            raise AuthError("Classification service is not available - API key not configured")

        # Per-call time limits are enforced by the invoker.
        self._client = httpx.AsyncClient(headers=self.headers, timeout=None)
        self._owns_client = True
        logger.info("http_worker_connected", url=self.url)

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.info("http_worker_disconnected")

    async def invoke(
        self,
        payload: bytes,
        media_type: str,
        options: Optional[dict] = None,
    ) -> Any:
        """Send one file to the provider and return the normalized output."""
        if self._client is None:
            await self.connect()

        options = options or {}
        filename = options.get("filename") or "upload"

        try:
            response = await self._client.post(
                self.url,
                headers=self.headers,
                files={"image_file": (filename, payload, media_type)},
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Provider request timed out: {e}")
        except httpx.RequestError as e:
            logger.error("http_worker_request_error", url=self.url, error=str(e))
            raise UnknownProviderError(f"Provider request failed: {e}")

        if response.status_code != 200:
            logger.error(
                "http_worker_request_failed",
                status=response.status_code,
                error=response.text[:200],
            )
            raise classify_status(
                response.status_code,
                f"Provider error: {response.status_code} {response.reason_phrase}",
            )

        return self._parse(response)

    def _parse(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise UnknownProviderError(f"Invalid JSON from provider: {e}")

        description = None
        if isinstance(data, dict):
            descriptions = data.get("descriptions") or []
            if descriptions and isinstance(descriptions[0], dict):
                description = descriptions[0].get("text")
            description = description or data.get("description")

        return {
            "description": description or "No description available",
            "confidence": 95,
            "source": self.name,
        }
