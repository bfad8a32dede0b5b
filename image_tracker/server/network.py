from __future__ import annotations

import ipaddress
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import geoip2.database
import geoip2.errors
import requests

logger = logging.getLogger(__name__)

PRIVATE_NETWORK = "Private Network"
MOBILE_NETWORK = "Mobile Network"
BUSINESS_NETWORK = "Business Network"
RESIDENTIAL_NETWORK = "Residential Network"
UNKNOWN = "Unknown"

# Ordered scope rules; the first network that contains the address wins.
# Anything not listed here is treated as public.
SCOPE_RULES: Sequence[Tuple[str, Sequence[str]]] = (
    ("loopback", ("127.0.0.0/8", "::1/128")),
    ("linkLocal", ("169.254.0.0/16", "fe80::/10")),
    ("uniqueLocal", ("fc00::/7",)),
    ("private", ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")),
)
_SCOPE_NETWORKS = [
    (scope, [ipaddress.ip_network(n) for n in nets]) for scope, nets in SCOPE_RULES
]
NON_PUBLIC_SCOPES = {scope for scope, _ in SCOPE_RULES}

# Organization-name heuristics: (substring, network type), first match wins.
IPV4_ORG_RULES: Sequence[Tuple[str, str]] = (
    ("mobile", MOBILE_NETWORK),
    ("business", BUSINESS_NETWORK),
    ("corporate", BUSINESS_NETWORK),
)
IPV6_ORG_RULES: Sequence[Tuple[str, str]] = (("mobile", MOBILE_NETWORK),)

_MAPPED_PREFIX = "::ffff:"

LookupResult = Dict[str, Optional[str]]


@dataclass(frozen=True)
class NetworkConfig:
    city_db: Optional[str] = None
    asn_db: Optional[str] = None
    lookup_enabled: bool = True
    lookup_url_template: str = "https://ipinfo.io/{ip}/json"
    lookup_timeout_seconds: float = 3.0


@dataclass(frozen=True)
class NetworkClassification:
    address: str
    address_family: Optional[str]  # "IPv4" | "IPv6" | None when unparseable
    scope: str  # loopback | private | linkLocal | uniqueLocal | public | unknown
    network_type: str
    org: Optional[str] = None
    country: str = UNKNOWN
    region: str = UNKNOWN
    city: str = UNKNOWN
    timezone: Optional[str] = None
    coordinates: Optional[str] = None
    lookup_source: Optional[str] = None
    note: Optional[str] = None

    @property
    def location(self) -> str:
        return f"{self.city}, {self.region}, {self.country}"

    def geo(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "region": self.region,
            "city": self.city,
            "coordinates": self.coordinates,
            "timezone": self.timezone,
        }


def normalize_address(raw: str) -> str:
    """
    Strip whitespace and the IPv4-mapped IPv6 prefix (``::ffff:1.2.3.4``).
    """
    addr = (raw or "").strip()
    if addr.lower().startswith(_MAPPED_PREFIX) and "." in addr:
        addr = addr[len(_MAPPED_PREFIX):]
    return addr


def address_scope(ip_obj: ipaddress._BaseAddress) -> str:
    for scope, networks in _SCOPE_NETWORKS:
        for net in networks:
            if net.version == ip_obj.version and ip_obj in net:
                return scope
    return "public"


def guess_family(addr: str) -> Optional[str]:
    if not addr:
        return None
    return "IPv6" if ":" in addr else "IPv4"


def network_type_from_org(org: Optional[str], rules: Sequence[Tuple[str, str]]) -> str:
    o = (org or "").lower()
    for needle, label in rules:
        if needle in o:
            return label
    return RESIDENTIAL_NETWORK


class GeoIpDatabaseProvider:
    """
    Local MaxMind database lookup (GeoLite2/GeoIP2 City, optional ASN database for the org name).
    """

    name = "geoip"

    def __init__(self, city_db: Optional[str], asn_db: Optional[str] = None) -> None:
        self._city = self._open(city_db)
        self._asn = self._open(asn_db)

    @staticmethod
    def _open(path: Optional[str]) -> Optional[geoip2.database.Reader]:
        if not path:
            return None
        try:
            return geoip2.database.Reader(path)
        except (OSError, ValueError, RuntimeError) as e:
            # maxminddb raises InvalidDatabaseError (a RuntimeError) for corrupt files.
            logger.warning(f"GeoIP database {path} unavailable: {e}")
            return None

    @property
    def available(self) -> bool:
        return self._city is not None

    def lookup(self, ip: str) -> Optional[LookupResult]:
        if self._city is None:
            return None
        try:
            resp = self._city.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug(f"GeoIP miss for {ip}")
            return None
        except geoip2.errors.GeoIP2Error as e:
            logger.warning(f"GeoIP lookup failed for {ip}: {e}")
            return None

        loc = None
        if resp.location.latitude is not None and resp.location.longitude is not None:
            loc = f"{resp.location.latitude},{resp.location.longitude}"
        return {
            "country": resp.country.iso_code or resp.registered_country.iso_code,
            "region": resp.subdivisions.most_specific.name,
            "city": resp.city.name,
            "org": self._org(ip, resp),
            "timezone": resp.location.time_zone,
            "loc": loc,
        }

    def _org(self, ip: str, city_resp: Any) -> Optional[str]:
        traits = city_resp.traits
        org = getattr(traits, "organization", None) or getattr(traits, "isp", None)
        if org or self._asn is None:
            return org
        try:
            return self._asn.asn(ip).autonomous_system_organization
        except (geoip2.errors.GeoIP2Error, ValueError):
            return None


class ExternalLookupProvider:
    """
    HTTP geolocation lookup returning ipinfo-style JSON:
    {country, region, city, org, timezone, loc}.

    ``timeout_seconds`` bounds the whole call, body included: the response is
    streamed and dropped once the deadline passes.
    """

    name = "external"
    max_body_bytes = 64 * 1024

    def __init__(
        self,
        url_template: str,
        timeout_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url_template = url_template
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def url_for(self, ip: str) -> str:
        return self.url_template.format(ip=quote(ip, safe=":"))

    def lookup(self, ip: str) -> Optional[LookupResult]:
        deadline = self.clock() + self.timeout_seconds
        try:
            resp = requests.get(
                self.url_for(ip),
                timeout=(self.timeout_seconds, self.timeout_seconds),
                headers={"Accept": "application/json"},
                stream=True,
            )
            try:
                resp.raise_for_status()
                body = self._read_body(resp, deadline)
            finally:
                resp.close()
            if body is None:
                logger.warning(f"External lookup exceeded {self.timeout_seconds}s for {ip}")
                return None
            data = json.loads(body)
        except requests.Timeout:
            logger.warning(f"External lookup timed out for {ip}")
            return None
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"External lookup failed for {ip}: {e}")
            return None

        if not isinstance(data, dict) or data.get("bogon") or data.get("error"):
            return None
        return {k: data.get(k) for k in ("country", "region", "city", "org", "timezone", "loc")}

    def _read_body(self, resp: requests.Response, deadline: float) -> Optional[bytes]:
        """Body bytes, or None once the deadline passes or the body grows too large."""
        chunks: List[bytes] = []
        size = 0
        for chunk in resp.iter_content(chunk_size=1024):
            if self.clock() >= deadline:
                return None
            size += len(chunk)
            if size > self.max_body_bytes:
                raise ValueError(f"response body larger than {self.max_body_bytes} bytes")
            chunks.append(chunk)
        if self.clock() >= deadline:
            return None
        return b"".join(chunks)


class NetworkClassifier:
    """
    Classifies a requester address. Never raises: every failure degrades to
    an Unknown-filled classification.

    Providers are tried in order; the first one returning a result wins.
    """

    def __init__(self, providers: Sequence[Any]) -> None:
        self.providers: List[Any] = list(providers)

    @classmethod
    def from_config(cls, cfg: NetworkConfig) -> "NetworkClassifier":
        providers: List[Any] = []
        geoip = GeoIpDatabaseProvider(cfg.city_db, cfg.asn_db)
        if geoip.available:
            providers.append(geoip)
        if cfg.lookup_enabled:
            providers.append(ExternalLookupProvider(cfg.lookup_url_template, cfg.lookup_timeout_seconds))
        return cls(providers)

    def classify(self, raw_address: str) -> NetworkClassification:
        addr = normalize_address(raw_address)
        try:
            return self._classify(addr)
        except Exception:
            logger.exception(f"Network classification failed for {addr!r}")
            return self._degraded(addr, guess_family(addr), "unknown")

    def _classify(self, addr: str) -> NetworkClassification:
        try:
            ip_obj = ipaddress.ip_address(addr)
        except ValueError:
            ip_obj = None

        if ip_obj is None:
            family = guess_family(addr)
            scope = "unknown"
        else:
            family = f"IPv{ip_obj.version}"
            scope = address_scope(ip_obj)
            if scope in NON_PUBLIC_SCOPES:
                return NetworkClassification(
                    address=addr,
                    address_family=family,
                    scope=scope,
                    network_type=PRIVATE_NETWORK,
                    country="Local",
                    region="Local",
                    city="Local Network",
                )

        rules = IPV6_ORG_RULES if family == "IPv6" else IPV4_ORG_RULES
        query = str(ip_obj) if ip_obj is not None else addr
        for provider in self.providers:
            if not query:
                break
            result = provider.lookup(query)
            if not result:
                continue
            return NetworkClassification(
                address=addr,
                address_family=family,
                scope=scope,
                network_type=network_type_from_org(result.get("org"), rules),
                org=result.get("org"),
                country=result.get("country") or UNKNOWN,
                region=result.get("region") or UNKNOWN,
                city=result.get("city") or UNKNOWN,
                timezone=result.get("timezone"),
                coordinates=result.get("loc"),
                lookup_source=getattr(provider, "name", None),
            )

        return self._degraded(addr, family, scope)

    @staticmethod
    def _degraded(addr: str, family: Optional[str], scope: str) -> NetworkClassification:
        return NetworkClassification(
            address=addr,
            address_family=family,
            scope=scope,
            network_type=f"{family} Network" if family else UNKNOWN,
            note="Limited information available (lookup unavailable)",
        )
