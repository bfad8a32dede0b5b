from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .correlation import CorrelationEngine
from .network import NetworkClassifier, normalize_address
from .store import CLICKABLE_IMAGE, ClickEvent, ViewRecord, ViewSource, ViewStore
from .useragent import parse_user_agent

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SECRET_HEADERS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-auth-token",
    "x-csrf-token",
}
MAX_HEADER_VALUE = 2048
MAX_BROWSER_LABEL = 64


@dataclass(frozen=True)
class RequestInfo:
    address: str
    user_agent: str = ""
    language: str = ""
    referrer: str = ""
    headers: Tuple[Tuple[str, str], ...] = ()


def redact_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """
    Snapshot of the request headers with credentials masked.
    """
    out: Dict[str, str] = {}
    for k, v in headers:
        if k.lower() in SECRET_HEADERS:
            out[k] = REDACTED
            continue
        vv = str(v)
        # Avoid accidentally storing extremely long headers.
        if len(vv) > MAX_HEADER_VALUE:
            vv = vv[:MAX_HEADER_VALUE] + "…"
        out[k] = vv
    return out


def primary_language(accept_language: str) -> str:
    first = (accept_language or "").split(",")[0].split(";")[0].strip()
    return first or "Unknown"


def _num(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _int(v: Any) -> Optional[int]:
    n = _num(v)
    return int(n) if n is not None else None


def click_from_payload(payload: Mapping[str, Any], *, now: float) -> ClickEvent:
    ts = payload.get("timestamp")
    return ClickEvent(
        timestamp=now,
        x=_num(payload.get("x")),
        y=_num(payload.get("y")),
        screen_width=_int(payload.get("screenWidth")),
        screen_height=_int(payload.get("screenHeight")),
        client_timestamp=str(ts) if ts is not None else None,
    )


class BeaconDispatcher:
    """
    Turns inbound beacon calls into view records or merge fragments.
    """

    def __init__(
        self,
        store: ViewStore,
        classifier: NetworkClassifier,
        engine: CorrelationEngine,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.engine = engine
        self.clock = clock

    def build_record(self, info: RequestInfo, source: ViewSource) -> ViewRecord:
        net = self.classifier.classify(info.address)
        browser, os_name = parse_user_agent(info.user_agent)
        return ViewRecord(
            timestamp=self.clock(),
            ip=net.address or info.address,
            user_agent=info.user_agent,
            browser=browser,
            os=os_name,
            language=primary_language(info.language),
            source=source,
            referrer=info.referrer or "Direct",
            geo=net.geo(),
            location=net.location,
            network_type=net.network_type,
            org=net.org,
            network_note=net.note,
            headers=redact_headers(info.headers),
        )

    def record_view(self, tracking_id: str, info: RequestInfo, source: ViewSource) -> Optional[ViewRecord]:
        if self.store.get(tracking_id) is None:
            return None
        record = self.build_record(info, source)
        if not self.store.append_view(tracking_id, record):
            return None
        logger.info(f"View recorded for {tracking_id}: source={source} ip={record.ip} ({record.network_type})")
        return record

    def click(self, tracking_id: str, info: RequestInfo, payload: Mapping[str, Any]) -> Optional[ViewRecord]:
        if self.store.get(tracking_id) is None:
            return None
        click = click_from_payload(payload, now=self.clock())
        fresh = self.build_record(info, CLICKABLE_IMAGE)
        return self.engine.record_click(tracking_id, fresh.ip, click, fresh)

    def enhanced(self, tracking_id: str, info: RequestInfo, payload: Dict[str, Any]) -> Optional[ViewRecord]:
        return self.engine.merge_enhanced(tracking_id, self._address(info), payload)

    def stealth_data(self, tracking_id: str, info: RequestInfo, payload: Dict[str, Any]) -> Optional[ViewRecord]:
        return self.engine.merge_stealth_data(tracking_id, self._address(info), payload)

    def update_browser(self, tracking_id: str, info: RequestInfo, browser: str) -> Optional[ViewRecord]:
        label = (browser or "").strip()[:MAX_BROWSER_LABEL]
        if not label:
            return None
        return self.engine.update_browser(tracking_id, self._address(info), label)

    def _address(self, info: RequestInfo) -> str:
        # Must match the address stored by build_record.
        return normalize_address(info.address) or info.address
