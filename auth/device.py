"""
auth/device.py -- Device descriptor, network location and login risk tier.

Everything produced here is advisory signal for session metadata and "new
device" detection. Nothing in this module is an access-control gate, and
nothing in it may fail a login:

  describe_device()   degrades to "Unknown Device" / "Unknown Browser" /
                      "Unknown OS" when signals are missing or unrecognized.
  describe_location() never raises; any lookup failure yields a descriptor
                      carrying only the IP (or "Unknown").

The IP self-lookup and geo-IP lookup are injected callables (defaulting to
core.fetcher) so tests and deployments can swap them out. Both receive the
configured timeout.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
from typing import Any, Callable, Optional

from auth.models import DeviceDescriptor, DeviceSignals, LocationDescriptor, LoginMethod, RiskTier
from core import fetcher

logger = logging.getLogger("retailauth.device")

GeoLookup = Callable[..., Optional[dict[str, Any]]]
IPLookup = Callable[..., Optional[str]]

# ---------------------------------------------------------------------------
# User-agent classification tables (first match wins, so order matters)
# ---------------------------------------------------------------------------

_TABLET_RE = re.compile(r"ipad|tablet|kindle|silk|playbook", re.IGNORECASE)
_MOBILE_RE = re.compile(r"mobi|iphone|ipod|android|blackberry|iemobile|opera mini|webos", re.IGNORECASE)
_ANDROID_RE = re.compile(r"android", re.IGNORECASE)
_MOBI_RE = re.compile(r"mobi", re.IGNORECASE)

# iOS before macOS: iPhone user agents contain "like Mac OS X".
# Android before Linux: Android user agents contain "Linux".
_OS_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"iphone|ipad|ipod", re.IGNORECASE), "iOS"),
    (re.compile(r"windows", re.IGNORECASE), "Windows"),
    (re.compile(r"android", re.IGNORECASE), "Android"),
    (re.compile(r"\bcros\b", re.IGNORECASE), "ChromeOS"),
    (re.compile(r"mac os x|macintosh", re.IGNORECASE), "macOS"),
    (re.compile(r"linux", re.IGNORECASE), "Linux"),
)

# Edge, Opera and Samsung all advertise "Chrome"; Chrome advertises "Safari".
_BROWSER_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"edg(e|a|ios)?/", re.IGNORECASE), "Edge"),
    (re.compile(r"opr/|opera", re.IGNORECASE), "Opera"),
    (re.compile(r"samsungbrowser", re.IGNORECASE), "Samsung Internet"),
    (re.compile(r"firefox|fxios", re.IGNORECASE), "Firefox"),
    (re.compile(r"chrome|crios", re.IGNORECASE), "Chrome"),
    (re.compile(r"safari", re.IGNORECASE), "Safari"),
)

# Risk scoring points.
_MFA_POINTS = -2
_SSO_POINTS = -1
_PASSWORD_ONLY_POINTS = 1
_NEW_DEVICE_POINTS = 2


def _first_match(patterns, text: str, default: str) -> str:
    for pattern, label in patterns:
        if pattern.search(text):
            return label
    return default


def _is_public_ip(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


def device_fingerprint(signals: DeviceSignals) -> str:
    """Stable SHA-256 digest of the client signals.

    Not a secret and not unique per device: two clients with identical
    browser, language, screen and timezone share a fingerprint.
    """
    raw = "|".join(
        [
            signals.user_agent or "",
            signals.language or "",
            signals.screen_resolution or "",
            signals.timezone or "",
        ]
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DeviceRiskProfiler:
    """Derives device/location descriptors and the coarse login risk tier.

    Usage:
        profiler = DeviceRiskProfiler(geo_enabled=False)
        device = profiler.describe_device(DeviceSignals(user_agent=ua))
        tier = profiler.risk_tier("password", mfa_used=False, is_new_device=True)
    """

    def __init__(
        self,
        geo_lookup: GeoLookup | None = None,
        ip_lookup: IPLookup | None = None,
        timeout: float = 3.0,
        geo_enabled: bool = True,
    ) -> None:
        self._geo_lookup = geo_lookup or fetcher.fetch_geo
        self._ip_lookup = ip_lookup or fetcher.fetch_public_ip
        self.timeout = timeout
        self.geo_enabled = geo_enabled

    # ------------------------------------------------------------------
    # Device
    # ------------------------------------------------------------------

    def describe_device(self, signals: DeviceSignals | None = None) -> DeviceDescriptor:
        signals = signals or DeviceSignals()
        ua = signals.user_agent or ""

        # Android tablets omit "Mobile" from the user agent.
        android_tablet = bool(_ANDROID_RE.search(ua)) and not _MOBI_RE.search(ua)
        if _TABLET_RE.search(ua) or android_tablet:
            device_type = "tablet"
        elif _MOBILE_RE.search(ua):
            device_type = "mobile"
        else:
            device_type = "desktop"

        os_name = _first_match(_OS_PATTERNS, ua, "Unknown OS")
        browser = _first_match(_BROWSER_PATTERNS, ua, "Unknown Browser")
        device_name = "Unknown Device" if os_name == "Unknown OS" else f"{os_name} {device_type.capitalize()}"

        return DeviceDescriptor(
            device_type=device_type,
            device_name=device_name,
            browser=browser,
            os=os_name,
            screen_resolution=signals.screen_resolution,
            timezone=signals.timezone,
            user_agent=signals.user_agent,
            fingerprint=device_fingerprint(signals),
        )

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    def describe_location(self, ip: str | None = None) -> LocationDescriptor:
        """Resolve ip (or this host's public IP when None) to a location. Never raises."""
        if not self.geo_enabled:
            return LocationDescriptor(ip=ip or "Unknown")
        try:
            if not ip:
                ip = self._ip_lookup(timeout=self.timeout)
            if not ip:
                return LocationDescriptor()
            if not _is_public_ip(ip):
                # Private, loopback and reserved ranges have no meaningful geo.
                return LocationDescriptor(ip=ip)
            geo = self._geo_lookup(ip, timeout=self.timeout)
        except Exception:
            logger.warning("Location lookup failed for %s", ip, exc_info=True)
            return LocationDescriptor(ip=ip or "Unknown")
        if not geo:
            return LocationDescriptor(ip=ip)
        return LocationDescriptor(
            ip=ip,
            city=geo.get("city"),
            region=geo.get("region"),
            country=geo.get("country"),
            latitude=geo.get("latitude"),
            longitude=geo.get("longitude"),
            timezone=geo.get("timezone"),
        )

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    @staticmethod
    def risk_tier(login_method: str, mfa_used: bool, is_new_device: bool) -> str:
        """Score a login: <=0 low, 1-2 medium, >2 high. Heuristic only."""
        score = 0
        if mfa_used:
            score += _MFA_POINTS
        if login_method == LoginMethod.sso.value:
            score += _SSO_POINTS
        if login_method == LoginMethod.password.value and not mfa_used:
            score += _PASSWORD_ONLY_POINTS
        if is_new_device:
            score += _NEW_DEVICE_POINTS

        if score <= 0:
            return RiskTier.low.value
        if score <= 2:
            return RiskTier.medium.value
        return RiskTier.high.value
