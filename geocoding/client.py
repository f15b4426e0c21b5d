"""
Address geocoding against a Nominatim-compatible endpoint.

Geocoding is a best-effort collaborator: any failure (network, HTTP error,
empty result, unexpected body) is logged and reported as None so the trip
planner can surface LocationUnresolved instead of a transport error.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from config import FEED_TIMEOUT_SECONDS, GEOCODER_URL, GEOCODER_USER_AGENT

logger = logging.getLogger(__name__)

_ADDRESS_WORDS = (
    "street", "st", "avenue", "ave", "road", "rd", "boulevard", "blvd",
    "drive", "dr", "lane", "ln", "way", "place", "pl", "court", "ct",
)
_ADDRESS_WORD_RE = re.compile(r"\b(" + "|".join(_ADDRESS_WORDS) + r")\b", re.IGNORECASE)


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lon: float
    formatted_address: str


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult | None: ...

    async def reverse_geocode(self, lat: float, lon: float) -> str | None: ...


def looks_like_address(query: str) -> bool:
    """Heuristic used to tell a street address from a stop name in free-text input."""
    if not query:
        return False
    if re.search(r"\d", query):
        return True
    return bool(_ADDRESS_WORD_RE.search(query))


def _format_reverse(body: dict[str, Any]) -> str | None:
    address = body.get("address") or {}
    street = " ".join(p for p in (address.get("house_number"), address.get("road")) if p)
    city = address.get("city") or address.get("town") or address.get("village")
    parts = [p for p in (street, city, address.get("state"), address.get("postcode")) if p]
    if parts:
        return ", ".join(parts)
    return body.get("display_name") or None


class NominatimGeocoder:
    def __init__(
        self,
        base_url: str = GEOCODER_URL,
        user_agent: str = GEOCODER_USER_AGENT,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = FEED_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": user_agent}
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any | None:
        try:
            response = await self._http.get(f"{self.base_url}/{path}", params={**params, "format": "jsonv2"})
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Geocoder request %s failed: %s", path, exc)
            return None

    async def geocode(self, address: str) -> GeocodeResult | None:
        if not address or not address.strip():
            return None
        body = await self._get_json("search", {"q": address.strip(), "limit": 1})
        if not isinstance(body, list) or not body:
            logger.info("No geocoding match for %r", address)
            return None
        match = body[0]
        try:
            return GeocodeResult(
                lat=float(match["lat"]),
                lon=float(match["lon"]),
                formatted_address=match.get("display_name") or address,
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Unexpected geocoder result for %r", address)
            return None

    async def reverse_geocode(self, lat: float, lon: float) -> str | None:
        body = await self._get_json("reverse", {"lat": lat, "lon": lon})
        if not isinstance(body, dict) or "error" in body:
            return None
        return _format_reverse(body)
