from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .store import DOWNLOADED_IMAGE, ClickEvent, TrackedAsset, ViewRecord, ViewSource, ViewStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationConfig:
    # Enhanced fingerprint, click and browser-label merges.
    enrichment_window_seconds: float = 300.0
    # Supplementary data posted by the downloadable tracker.
    stealth_window_seconds: float = 60.0


def find_merge_target(
    asset: TrackedAsset,
    address: str,
    window_seconds: float,
    source: Optional[ViewSource] = None,
    *,
    now: Optional[float] = None,
) -> Optional[ViewRecord]:
    """
    Most recent view from ``address`` younger than ``window_seconds``
    (optionally restricted to ``source``), or None.

    A record whose age has reached the window is never eligible. Equal
    timestamps resolve to the record appended last.
    """
    now = time.time() if now is None else now
    best: Optional[ViewRecord] = None
    for record in asset.views:
        if record.ip != address:
            continue
        if now - record.timestamp >= window_seconds:
            continue
        if source is not None and record.source != source:
            continue
        if best is None or record.timestamp >= best.timestamp:
            best = record
    return best


def add_click(record: ViewRecord, click: ClickEvent) -> None:
    record.clicks.append(click)
    record.click_count += 1


class CorrelationEngine:
    """
    Folds supplementary beacon calls into an earlier view record.

    There is no session token on passive requests, so records are matched on
    (requester address, freshness window, optional source). Visitors sharing
    a NAT or proxy address inside the window are merged together; that is a
    known limitation of the heuristic.
    """

    def __init__(
        self,
        store: ViewStore,
        cfg: CorrelationConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cfg = cfg
        self.clock = clock

    def _selector(self, address: str, window: float, source: Optional[ViewSource] = None):
        def select(asset: TrackedAsset) -> Optional[ViewRecord]:
            return find_merge_target(asset, address, window, source, now=self.clock())

        return select

    def record_click(self, tracking_id: str, address: str, click: ClickEvent, new_record: ViewRecord) -> ViewRecord:
        """
        Attach ``click`` to the latest view from ``address`` in the window. With
        no such view, ``new_record`` is appended carrying the click.
        """
        created = []

        def create() -> ViewRecord:
            add_click(new_record, click)
            created.append(new_record)
            return new_record

        record = self.store.mutate_latest_matching(
            tracking_id,
            select=self._selector(address, self.cfg.enrichment_window_seconds),
            mutate=lambda rec: add_click(rec, click),
            create=create,
        )
        if created:
            logger.info(f"Click from {address} on {tracking_id} opened a new view")
        else:
            logger.info(f"Click from {address} on {tracking_id} merged (clickCount={record.click_count if record else 0})")
        return record  # type: ignore[return-value]

    def merge_enhanced(self, tracking_id: str, address: str, fingerprint: Dict[str, Any]) -> Optional[ViewRecord]:
        def mutate(rec: ViewRecord) -> None:
            rec.enhanced_data = fingerprint
            resolution = screen_resolution(fingerprint)
            if resolution:
                rec.screen_resolution = resolution

        return self._merge(tracking_id, address, self.cfg.enrichment_window_seconds, mutate, kind="enhanced data")

    def merge_stealth_data(self, tracking_id: str, address: str, data: Dict[str, Any]) -> Optional[ViewRecord]:
        def mutate(rec: ViewRecord) -> None:
            rec.stealth_data = data
            resolution = screen_resolution(data)
            if resolution:
                rec.screen_resolution = resolution

        return self._merge(
            tracking_id, address, self.cfg.stealth_window_seconds, mutate, source=DOWNLOADED_IMAGE, kind="stealth data"
        )

    def update_browser(self, tracking_id: str, address: str, browser: str) -> Optional[ViewRecord]:
        def mutate(rec: ViewRecord) -> None:
            rec.browser = browser

        return self._merge(tracking_id, address, self.cfg.enrichment_window_seconds, mutate, kind="browser label")

    def _merge(
        self,
        tracking_id: str,
        address: str,
        window: float,
        mutate: Callable[[ViewRecord], None],
        *,
        source: Optional[ViewSource] = None,
        kind: str,
    ) -> Optional[ViewRecord]:
        record = self.store.mutate_latest_matching(
            tracking_id, select=self._selector(address, window, source), mutate=mutate
        )
        if record is None:
            logger.info(f"No recent view from {address} on {tracking_id}; {kind} dropped")
        return record


def screen_resolution(data: Dict[str, Any]) -> Optional[str]:
    if data.get("screenResolution"):
        return str(data["screenResolution"])
    screen = data.get("screen")
    if isinstance(screen, dict) and screen.get("width") and screen.get("height"):
        return f"{screen['width']}x{screen['height']}"
    if data.get("screenWidth") and data.get("screenHeight"):
        return f"{data['screenWidth']}x{data['screenHeight']}"
    return None
