"""
fetcher.py -- All external data fetching.

Two free public services back the login-location signal:
  ipify  -- "what is my public IP" self-lookup, used when no client IP is known.
  ipapi  -- best-effort IP geolocation (city / region / country / coordinates).

Both are advisory. Every function here returns None on any network, HTTP or
decoding failure so the login path never waits on, or fails because of, a
third-party service.
"""

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger("retailauth.fetcher")

IP_LOOKUP_URL = "https://api.ipify.org"
GEO_API = "https://ipapi.co/{ip}/json/"

_DEFAULT_TIMEOUT = 3.0

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30 -- these are known public APIs.
_session = requests.Session()
_session.max_redirects = 3


def fetch_public_ip(timeout: float = _DEFAULT_TIMEOUT) -> Optional[str]:
    """Return this host's public IP address as reported by ipify, or None."""
    try:
        resp = _session.get(IP_LOOKUP_URL, params={"format": "json"}, timeout=timeout)
        resp.raise_for_status()
        ip = resp.json().get("ip")
        return str(ip) if ip else None
    except (requests.RequestException, ValueError) as e:
        logger.debug("Public IP self-lookup failed: %s", e)
        return None


def fetch_geo(ip: str, timeout: float = _DEFAULT_TIMEOUT) -> Optional[dict[str, Any]]:
    """Fetch approximate geolocation for ip from ipapi.

    Returns a dict with city, region, country, latitude, longitude and timezone
    keys (any of which may be None), or None when the lookup fails or the
    service reports an error for the address (reserved ranges, quota).
    """
    try:
        resp = _session.get(GEO_API.format(ip=ip), timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Geo-IP lookup failed for %s: %s", ip, e)
        return None
    if not isinstance(data, dict) or data.get("error"):
        logger.debug("Geo-IP service returned no data for %s", ip)
        return None
    return {
        "city": data.get("city"),
        "region": data.get("region"),
        "country": data.get("country_name") or data.get("country"),
        "latitude": data.get("latitude"),
        "longitude": data.get("longitude"),
        "timezone": data.get("timezone"),
    }
