import httpx


class StaticFeedClient:
    """Async HTTP client for downloading static GTFS packages and documents.

    Usage:
        async with StaticFeedClient(timeout=30.0) as client:
            content = await client.fetch_bytes(url)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
    ):
        self._timeout = timeout
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "StaticFeedClient":
        """Enter async context - create HTTP client."""
        headers = {}
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        self._client = httpx.AsyncClient(
            headers=headers, timeout=self._timeout, follow_redirects=True
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> httpx.Response:
        """GET a URL and return the successful response.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        response = await self._client.get(url)
        response.raise_for_status()
        return response

    async def fetch_bytes(self, url: str) -> bytes:
        response = await self.fetch(url)
        return response.content
