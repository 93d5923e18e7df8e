import httpx

from transit_engine.models.responses import FareResponse


class FareClient:
    """Async HTTP client for an agency fare endpoint.

    Usage:
        async with FareClient(base_url) as client:
            response = await client.fetch_route_fare("38")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            base_url: Root of the agency API; fares live under /routes/{id}/fares.
            api_key: Optional key sent with every request.
            api_key_header: Header carrying the key.
            timeout: HTTP timeout in seconds.
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "FareClient":
        """Enter async context - create HTTP client."""
        headers = {}
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        self._client = httpx.AsyncClient(headers=headers, timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context - close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch_route_fare(self, route_id: str) -> FareResponse:
        """Fetch and parse the fare document for one route.

        Raises:
            RuntimeError: If client not initialized.
            httpx.HTTPError: If the HTTP request fails.
        """
        if not self._client:
            raise RuntimeError("Client not initialized - use 'async with'")

        response = await self._client.get(f"{self._base_url}/routes/{route_id}/fares")
        response.raise_for_status()

        # parse JSON directly into Pydantic model
        return FareResponse.model_validate(response.json())
