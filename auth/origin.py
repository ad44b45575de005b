"""
auth/origin.py -- Network origin and best-effort geolocation for sessions.

client_ip() is the single place that decides which address a request comes
from; the rate limiter and the session store both use it.

GeoLocator queries ipinfo.io when IPINFO_TOKEN is configured. Lookups are
best-effort: any network or parse failure logs a warning and returns an empty
GeoLocation, so a slow geo provider can never fail a login.
"""

from __future__ import annotations

import ipaddress
import logging

import requests
from starlette.requests import Request

from auth.models import GeoLocation

logger = logging.getLogger("gsoauth.origin")

IPINFO_URL = "https://ipinfo.io/{ip}/json"


def client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    """Return the caller's network address.

    X-Forwarded-For is only honoured when a trusted reverse proxy is in front
    of the service; otherwise any client could spoof its rate-limit key.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    return request.client.host if request.client else "unknown"


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved)


class GeoLocator:
    """Resolve an IP address to country/city/region via ipinfo.io."""

    def __init__(self, token: str = "", timeout: float = 3.0) -> None:
        self.token = token
        self.timeout = timeout
        # max_redirects=3: a known public API never needs more hops.
        self._session = requests.Session()
        self._session.max_redirects = 3

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def lookup(self, ip: str) -> GeoLocation:
        if not self.enabled or not _is_public(ip):
            return GeoLocation()
        try:
            resp = self._session.get(IPINFO_URL.format(ip=ip), params={"token": self.token}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Geolocation lookup failed for %s: %s", ip, e)
            return GeoLocation()
        return GeoLocation(
            country=data.get("country") or None,
            city=data.get("city") or None,
            region=data.get("region") or None,
        )

    def close(self) -> None:
        self._session.close()
