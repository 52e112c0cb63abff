"""Turn a typed address into coordinates via Nominatim.

Best effort: any failure is logged and reported as "not found" so the
share-food flow can ask the user for another address.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.cache import EphemeralCache
from app.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError
from app.services.errors import FoodShareError, NetworkTimeout, UpstreamClientError, UpstreamServerError

logger = get_logger("geocoding_service")

GEOCODING_RESOURCE = "geocoding"
NOMINATIM_URL = "https://nominatim.openstreetmap.org"
USER_AGENT = "FoodShare/1.0 (contact@foodshare.club)"
GEOCODE_TIMEOUT_SECONDS = 5.0
GEOCODE_CACHE_TTL_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    display_name: Optional[str] = None


def normalize_address(address: str) -> str:
    return " ".join(address.lower().split())


class GeocodingService:
    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        base_url: str = NOMINATIM_URL,
        timeout: float = GEOCODE_TIMEOUT_SECONDS,
        breaker_config: CircuitBreakerConfig = CircuitBreakerConfig(),
        cache: Optional[EphemeralCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.breaker = breaker
        self.search_url = f"{base_url.rstrip('/')}/search"
        self.timeout = timeout
        self.breaker_config = breaker_config
        self.cache = cache
        self._client = http_client or httpx.AsyncClient()

    async def _search(self, query: str) -> Optional[Coordinates]:
        params = {"q": query, "format": "json", "limit": 1}
        try:
            response = await self._client.get(
                self.search_url,
                params=params,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkTimeout("Geocoding timed out") from e
        except httpx.TransportError as e:
            raise UpstreamServerError(f"Geocoding transport error: {e}") from e

        if response.status_code >= 500:
            raise UpstreamServerError(f"Geocoding failed with {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            raise UpstreamClientError(
                f"Geocoding rejected with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            results = response.json()
        except ValueError as e:
            raise UpstreamServerError("Geocoding returned invalid JSON", response.status_code) from e

        if not isinstance(results, list) or not results:
            return None

        first = results[0]
        try:
            return Coordinates(
                latitude=float(first["lat"]),
                longitude=float(first["lon"]),
                display_name=first.get("display_name"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamServerError(f"Geocoding returned an unusable result: {e}") from e

    async def geocode(self, address: str) -> Optional[Coordinates]:
        """Coordinates for ``address``, or None when nothing usable came back."""
        query = normalize_address(address)
        if not query:
            return None

        cache_key = f"geocode:{query}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        try:
            coordinates = await self.breaker.execute(
                GEOCODING_RESOURCE, lambda: self._search(query), self.breaker_config
            )
        except CircuitOpenError as e:
            logger.warning(f"Geocoding skipped: {e}")
            return None
        except FoodShareError as e:
            logger.warning(
                f"Geocoding failed: {e}",
                extra={"context": {"address": query, "error_type": type(e).__name__}},
            )
            return None

        if coordinates is None:
            logger.info("Address not found", extra={"context": {"address": query}})
            return None

        if self.cache is not None:
            self.cache.set(cache_key, coordinates, GEOCODE_CACHE_TTL_SECONDS)
        return coordinates
