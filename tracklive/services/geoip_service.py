"""
GeoIP Service: approximate caller location from its IP address.

Wraps an ip-api.com compatible provider. Calls are bounded by a total
timeout and results are cached per client address so repeated page loads
from the same address do not hit the provider's rate limit.
"""
import asyncio
import ipaddress
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import aiohttp

from tracklive.core.config import settings

logger = logging.getLogger(__name__)

LOOKUP_FIELDS = "status,country,city,lat,lon,isp,query"


class GeoIPLookupError(Exception):
    """Upstream lookup failed; carries the HTTP status the API should answer with."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def extract_client_ip(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    """First hop of X-Forwarded-For when proxied, else the socket peer."""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return peer_host or "unknown"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class GeoIPService:
    """
    Resolves an IP address to {lat, lng, city, country, ip}.

    Loopback callers are resolved through the provider's "who am I" lookup,
    which geolocates the server's own public address.
    """

    def __init__(
        self,
        base_url: str = settings.GEOIP_BASE_URL,
        timeout_seconds: float = settings.GEOIP_TIMEOUT_SECONDS,
        cache_ttl_seconds: float = settings.GEOIP_CACHE_TTL_SECONDS,
        local_addresses: Iterable[str] = tuple(settings.GEOIP_LOCAL_ADDRESSES),
        clock: Callable[[], float] = time.monotonic,
        max_cache_entries: int = settings.GEOIP_CACHE_MAX_ENTRIES,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.local_addresses = set(local_addresses)
        self.max_cache_entries = max_cache_entries
        self._clock = clock
        # client address -> (stored_at, payload)
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self.stats = {"lookups": 0, "cache_hits": 0, "upstream_calls": 0, "failures": 0}
        logger.info(
            f"GeoIPService initialized (provider={self.base_url}, timeout={timeout_seconds}s, cache_ttl={cache_ttl_seconds}s)"
        )

    def _get_cached(self, client_ip: str) -> Optional[Dict[str, Any]]:
        entry = self._cache.get(client_ip)
        if entry is None:
            return None
        stored_at, payload = entry
        if self._clock() - stored_at >= self.cache_ttl_seconds:
            del self._cache[client_ip]
            return None
        return payload

    def _store(self, client_ip: str, payload: Dict[str, Any]) -> None:
        now = self._clock()
        expired = [ip for ip, (stored_at, _) in self._cache.items() if now - stored_at >= self.cache_ttl_seconds]
        for ip in expired:
            del self._cache[ip]
        # Insertion order is storage order, so the first key is the oldest entry
        while len(self._cache) >= self.max_cache_entries:
            del self._cache[next(iter(self._cache))]
        self._cache[client_ip] = (now, payload)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def lookup(self, client_ip: str) -> Dict[str, Any]:
        """
        Geolocates `client_ip`, serving from cache when fresh.

        Args:
            client_ip: Address of the HTTP caller.

        Returns:
            Dict with lat, lng, city, country and ip.

        Raises:
            GeoIPLookupError: 400 if the address is malformed or the provider could not locate it,
                500 on network failure, timeout or an unparsable body.
        """
        self.stats["lookups"] += 1
        logger.info(f"Geolocation request from IP: {client_ip}")

        is_local = client_ip in self.local_addresses
        if not is_local:
            try:
                address = ipaddress.ip_address(client_ip)
                # Zone ids are free text and must never reach the provider URL
                if getattr(address, "scope_id", None):
                    raise ValueError("scoped IPv6 address")
                client_ip = str(address)
            except ValueError:
                self.stats["failures"] += 1
                logger.warning(f"Refusing to geocode malformed client address {client_ip!r}")
                raise GeoIPLookupError(400, "Unable to geocode IP")

        cached = self._get_cached(client_ip)
        if cached is not None:
            self.stats["cache_hits"] += 1
            logger.info(f"Using cached location for {client_ip}")
            return cached

        if is_local:
            logger.info("Localhost detected, geolocating the public address instead")
            url = f"{self.base_url}/?fields={LOOKUP_FIELDS}"
        else:
            url = f"{self.base_url}/{client_ip}?fields={LOOKUP_FIELDS}"

        try:
            geo_data = await self._fetch_json(url)
            result = self._parse_result(geo_data, None if is_local else client_ip)
        except GeoIPLookupError:
            self.stats["failures"] += 1
            raise

        self._store(client_ip, result)
        logger.info(f"Geocoded IP {client_ip}: {result}")
        return result

    async def _fetch_json(self, url: str) -> Any:
        self.stats["upstream_calls"] += 1
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    body = await response.text()
        except asyncio.TimeoutError:
            logger.error(f"Geo IP request timed out after {self.timeout_seconds}s: {url}")
            raise GeoIPLookupError(500, "Geocoding failed")
        except aiohttp.ClientError as e:
            logger.error(f"Geo IP HTTP error: {e}")
            raise GeoIPLookupError(500, "Geocoding failed")
        except UnicodeDecodeError as e:
            logger.error(f"Geo IP response is not valid text: {e}")
            raise GeoIPLookupError(500, "Parse failed")

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            logger.error(f"JSON parse error: {e}")
            raise GeoIPLookupError(500, "Parse failed")

    def _parse_result(self, geo_data: Any, client_ip: Optional[str]) -> Dict[str, Any]:
        if (
            not isinstance(geo_data, dict)
            or geo_data.get("status") != "success"
            or not _is_number(geo_data.get("lat"))
            or not _is_number(geo_data.get("lon"))
        ):
            logger.error(f"Invalid response from geolocation provider: {geo_data}")
            raise GeoIPLookupError(400, "Unable to geocode IP")

        return {
            "lat": geo_data["lat"],
            "lng": geo_data["lon"],
            "city": geo_data.get("city") or "Unknown",
            "country": geo_data.get("country") or "Unknown",
            "ip": client_ip or geo_data.get("query") or "unknown",
        }
