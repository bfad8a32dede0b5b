from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

ViewSource = Literal["WebsiteView", "EmailEmbed", "ClickableImage", "DownloadedImage"]

WEBSITE_VIEW: ViewSource = "WebsiteView"
EMAIL_EMBED: ViewSource = "EmailEmbed"
CLICKABLE_IMAGE: ViewSource = "ClickableImage"
DOWNLOADED_IMAGE: ViewSource = "DownloadedImage"


def utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class DuplicateTrackingId(KeyError):
    pass


@dataclass
class ClickEvent:
    timestamp: float
    x: Optional[float]
    y: Optional[float]
    screen_width: Optional[int]
    screen_height: Optional[int]
    client_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": utc_iso(self.timestamp),
            "position": {"x": self.x, "y": self.y},
            "viewportSize": {"width": self.screen_width, "height": self.screen_height},
            "clientTimestamp": self.client_timestamp,
        }


@dataclass
class ViewRecord:
    timestamp: float
    ip: str
    user_agent: str
    browser: str
    os: str
    language: str
    source: ViewSource
    referrer: str = "Direct"
    geo: Dict[str, Any] = field(default_factory=dict)
    location: str = "Unknown, Unknown, Unknown"
    network_type: str = "Unknown"
    org: Optional[str] = None
    network_note: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    enhanced_data: Optional[Dict[str, Any]] = None
    screen_resolution: Optional[str] = None
    stealth_data: Optional[Dict[str, Any]] = None
    clicks: List[ClickEvent] = field(default_factory=list)
    click_count: int = 0

    @property
    def device(self) -> str:
        return f"{self.browser} on {self.os}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "timestamp": utc_iso(self.timestamp),
            "ip": self.ip,
            "userAgent": self.user_agent,
            "browser": self.browser,
            "os": self.os,
            "device": self.device,
            "language": self.language,
            "source": self.source,
            "referrer": self.referrer,
            "geo": dict(self.geo),
            "location": self.location,
            "networkType": self.network_type,
            "org": self.org,
            "headers": dict(self.headers),
            "clickCount": self.click_count,
            "clicks": [c.to_dict() for c in self.clicks],
        }
        if self.network_note:
            out["networkNote"] = self.network_note
        if self.enhanced_data is not None:
            out["enhancedData"] = self.enhanced_data
        if self.screen_resolution:
            out["screenResolution"] = self.screen_resolution
        if self.stealth_data is not None:
            out["stealthData"] = self.stealth_data
        return out


@dataclass
class TrackedAsset:
    tracking_id: str
    asset_path: str
    created_at: float
    views: List[ViewRecord] = field(default_factory=list)
    # Serializes every read-scan-mutate of ``views``.
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            views = [v.to_dict() for v in self.views]
        return {
            "trackingId": self.tracking_id,
            "views": views,
            "createdAt": utc_iso(self.created_at),
        }


class ViewStore:
    """
    Process-wide, memory-resident registry: tracking id -> TrackedAsset.

    Constructed once per application and handed to the request handlers.
    Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._assets: Dict[str, TrackedAsset] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)

    def register(self, tracking_id: str, asset_path: str, *, created_at: Optional[float] = None) -> TrackedAsset:
        asset = TrackedAsset(
            tracking_id=tracking_id,
            asset_path=asset_path,
            created_at=time.time() if created_at is None else created_at,
        )
        with self._lock:
            if tracking_id in self._assets:
                raise DuplicateTrackingId(tracking_id)
            self._assets[tracking_id] = asset
        return asset

    def get(self, tracking_id: str) -> Optional[TrackedAsset]:
        with self._lock:
            return self._assets.get(tracking_id)

    def append_view(self, tracking_id: str, record: ViewRecord) -> bool:
        asset = self.get(tracking_id)
        if asset is None:
            return False
        with asset.lock:
            asset.views.append(record)
        return True

    def mutate_latest_matching(
        self,
        tracking_id: str,
        *,
        select: Callable[[TrackedAsset], Optional[ViewRecord]],
        mutate: Callable[[ViewRecord], None],
        create: Optional[Callable[[], ViewRecord]] = None,
    ) -> Optional[ViewRecord]:
        """
        Under the asset lock: pick a merge target with ``select`` and apply
        ``mutate`` to it, or append the record built by ``create`` when
        nothing matches. Returns the touched record, or None.
        """
        asset = self.get(tracking_id)
        if asset is None:
            return None
        with asset.lock:
            target = select(asset)
            if target is not None:
                mutate(target)
                return target
            if create is None:
                return None
            record = create()
            asset.views.append(record)
            return record
