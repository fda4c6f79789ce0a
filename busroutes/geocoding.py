"""Stop geocoding with a persistent, monotonically growing cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests

from .models import GeocodingError, StopRecord, TransientServiceError
from .retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class Geocoder(Protocol):
    def geocode(self, query: str) -> Optional[tuple[float, float]]: ...


class GoogleGeocoder:
    """Google Geocoding API client, region-biased."""

    def __init__(
        self,
        api_key: str,
        *,
        region: str = "us",
        session: Optional[requests.Session] = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.api_key = api_key
        self.region = region
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def geocode(self, query: str) -> Optional[tuple[float, float]]:
        response = self.session.get(
            GEOCODE_URL,
            params={"address": query, "region": self.region, "key": self.api_key},
            timeout=self.timeout_s,
        )
        response.raise_for_status()
        payload = response.json()
        status = payload.get("status")
        if status == "OK" and payload.get("results"):
            location = payload["results"][0]["geometry"]["location"]
            return float(location["lat"]), float(location["lng"])
        if status == "ZERO_RESULTS":
            return None
        if status in ("OVER_QUERY_LIMIT", "UNKNOWN_ERROR"):
            raise TransientServiceError(f"Geocoding status {status}")
        raise GeocodingError(
            f"Geocoding status {status}: {payload.get('error_message', '')}".strip()
        )


@dataclass
class GeocodeStats:
    hits: int = 0
    misses: int = 0
    failures: int = 0


def build_query(location: str, region_suffix: str) -> str:
    location = location.strip()
    if region_suffix and region_suffix.lower() not in location.lower():
        return f"{location}, {region_suffix}"
    return location


class GeocodingCache:
    """Resolve stop coordinates through ``cache`` before calling ``geocoder``.

    ``cache`` is the pipeline state's ``geocode_cache`` mapping and is mutated
    in place. Entries are only ever added.
    """

    def __init__(
        self,
        geocoder: Geocoder,
        cache: dict[str, dict[str, float]],
        *,
        region_suffix: str = "",
        delay_s: float = 0.2,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.geocoder = geocoder
        self.cache = cache
        self.region_suffix = region_suffix
        self.delay_s = delay_s
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        # Queries with no match, remembered for this run only.
        self._misses: set[str] = set()

    def lookup(self, location: str) -> Optional[tuple[float, float]]:
        query = build_query(location, self.region_suffix)
        key = query.lower()
        cached = self.cache.get(key)
        if cached is not None:
            return cached["lat"], cached["lng"]
        if key in self._misses:
            return None

        result = call_with_retry(
            self.geocoder.geocode,
            query,
            description=f"geocode {query!r}",
            policy=self.policy,
        )
        if self.delay_s > 0:
            self.sleep(self.delay_s)
        if result is None:
            self._misses.add(key)
            return None
        lat, lng = result
        self.cache[key] = {"lat": lat, "lng": lng}
        return lat, lng

    def geocode_stops(self, stops: list[StopRecord]) -> GeocodeStats:
        stats = GeocodeStats()
        for stop in stops:
            if stop.has_coordinates:
                continue
            key = build_query(stop.location, self.region_suffix).lower()
            was_cached = key in self.cache
            coords = self.lookup(stop.location)
            if coords is None:
                stop.geocode_error = f"No match for {build_query(stop.location, self.region_suffix)}"
                stats.failures += 1
                log.warning("Geocoding failed: %s", stop.location)
                continue
            stop.latitude, stop.longitude = coords
            stop.geocode_error = None
            if was_cached:
                stats.hits += 1
            else:
                stats.misses += 1
        return stats
