import threading
import unittest

from image_tracker.server.correlation import CorrelationConfig, CorrelationEngine, find_merge_target
from image_tracker.server.store import (
    CLICKABLE_IMAGE,
    DOWNLOADED_IMAGE,
    EMAIL_EMBED,
    WEBSITE_VIEW,
    ClickEvent,
    DuplicateTrackingId,
    ViewRecord,
    ViewStore,
)

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


def view(ip="203.0.113.7", ts=T0, source=WEBSITE_VIEW):
    return ViewRecord(timestamp=ts, ip=ip, user_agent="", browser="Chrome", os="Windows",
                      language="en-US", source=source)


def click(ts=T0):
    return ClickEvent(timestamp=ts, x=10.0, y=20.0, screen_width=800, screen_height=600)


class TestViewStore(unittest.TestCase):
    def test_register_rejects_duplicates(self):
        store = ViewStore()
        store.register("abc123", "/tmp/a.png")
        with self.assertRaises(DuplicateTrackingId):
            store.register("abc123", "/tmp/b.png")
        self.assertEqual(store.get("abc123").asset_path, "/tmp/a.png")
        self.assertEqual(len(store), 1)

    def test_get_unknown(self):
        self.assertIsNone(ViewStore().get("missing"))

    def test_append_view(self):
        store = ViewStore()
        store.register("abc123", "/tmp/a.png")
        self.assertTrue(store.append_view("abc123", view()))
        self.assertFalse(store.append_view("missing", view()))
        self.assertEqual(len(store.get("abc123").views), 1)

    def test_serialization(self):
        store = ViewStore()
        asset = store.register("abc123", "/tmp/a.png", created_at=T0)
        rec = view()
        rec.clicks.append(click())
        rec.click_count = 1
        store.append_view("abc123", rec)
        data = asset.to_dict()
        self.assertEqual(data["trackingId"], "abc123")
        self.assertTrue(data["createdAt"].startswith("2023-11-14T22:13:20"))
        v = data["views"][0]
        self.assertEqual(v["source"], WEBSITE_VIEW)
        self.assertEqual(v["device"], "Chrome on Windows")
        self.assertEqual(v["referrer"], "Direct")
        self.assertEqual(v["clickCount"], 1)
        self.assertEqual(v["clicks"][0]["position"], {"x": 10.0, "y": 20.0})
        self.assertNotIn("enhancedData", v)


class TestFindMergeTarget(unittest.TestCase):
    def setUp(self):
        self.store = ViewStore()
        self.asset = self.store.register("abc123", "/tmp/a.png")

    def add(self, rec):
        self.asset.views.append(rec)
        return rec

    def test_latest_matching_address(self):
        self.add(view(ts=T0 - 100))
        latest = self.add(view(ts=T0 - 10))
        self.add(view(ip="198.51.100.1", ts=T0 - 1))
        self.assertIs(find_merge_target(self.asset, "203.0.113.7", 300, now=T0), latest)

    def test_out_of_order_timestamps(self):
        newer = self.add(view(ts=T0 - 5))
        self.add(view(ts=T0 - 50))
        self.assertIs(find_merge_target(self.asset, "203.0.113.7", 300, now=T0), newer)

    def test_window_boundary_excluded(self):
        self.add(view(ts=T0 - 300))
        self.assertIsNone(find_merge_target(self.asset, "203.0.113.7", 300, now=T0))
        inside = self.add(view(ts=T0 - 299.9))
        self.assertIs(find_merge_target(self.asset, "203.0.113.7", 300, now=T0), inside)

    def test_source_filter(self):
        self.add(view(ts=T0 - 1, source=WEBSITE_VIEW))
        self.assertIsNone(find_merge_target(self.asset, "203.0.113.7", 60, DOWNLOADED_IMAGE, now=T0))
        dl = self.add(view(ts=T0 - 30, source=DOWNLOADED_IMAGE))
        self.assertIs(find_merge_target(self.asset, "203.0.113.7", 60, DOWNLOADED_IMAGE, now=T0), dl)

    def test_equal_timestamps_pick_last_appended(self):
        self.add(view(ts=T0 - 1, source=EMAIL_EMBED))
        second = self.add(view(ts=T0 - 1, source=WEBSITE_VIEW))
        self.assertIs(find_merge_target(self.asset, "203.0.113.7", 300, now=T0), second)

    def test_empty(self):
        self.assertIsNone(find_merge_target(self.asset, "203.0.113.7", 300, now=T0))


class TestCorrelationEngine(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = ViewStore()
        self.asset = self.store.register("abc123", "/tmp/a.png")
        self.engine = CorrelationEngine(self.store, CorrelationConfig(), clock=self.clock)

    def test_click_without_view_creates_record(self):
        rec = self.engine.record_click("abc123", "203.0.113.7", click(), view(source=CLICKABLE_IMAGE))
        self.assertEqual(len(self.asset.views), 1)
        self.assertEqual(rec.click_count, 1)
        self.assertEqual(len(rec.clicks), 1)

    def test_second_click_in_window_merges(self):
        self.engine.record_click("abc123", "203.0.113.7", click(), view(source=CLICKABLE_IMAGE))
        self.clock.now += 120
        rec = self.engine.record_click("abc123", "203.0.113.7", click(self.clock.now), view(ts=self.clock.now))
        self.assertEqual(len(self.asset.views), 1)
        self.assertEqual(rec.click_count, 2)

    def test_click_after_window_creates_second_record(self):
        self.engine.record_click("abc123", "203.0.113.7", click(), view(source=CLICKABLE_IMAGE))
        self.clock.now += 301
        self.engine.record_click("abc123", "203.0.113.7", click(self.clock.now), view(ts=self.clock.now))
        self.assertEqual(len(self.asset.views), 2)
        self.assertEqual([v.click_count for v in self.asset.views], [1, 1])

    def test_click_merges_into_view_of_any_source(self):
        self.asset.views.append(view(source=EMAIL_EMBED))
        self.engine.record_click("abc123", "203.0.113.7", click(), view(source=CLICKABLE_IMAGE))
        self.assertEqual(len(self.asset.views), 1)
        self.assertEqual(self.asset.views[0].source, EMAIL_EMBED)
        self.assertEqual(self.asset.views[0].click_count, 1)

    def test_enhanced_merge_and_expiry(self):
        self.asset.views.append(view())
        rec = self.engine.merge_enhanced("abc123", "203.0.113.7", {"screen": {"width": 1920, "height": 1080}})
        self.assertIsNotNone(rec)
        self.assertEqual(rec.screen_resolution, "1920x1080")
        self.assertEqual(rec.enhanced_data["screen"]["width"], 1920)

        self.clock.now += 300
        self.assertIsNone(self.engine.merge_enhanced("abc123", "203.0.113.7", {"x": 1}))
        self.assertEqual(len(self.asset.views), 1)

    def test_stealth_data_needs_downloaded_image_within_a_minute(self):
        self.asset.views.append(view(source=WEBSITE_VIEW))
        self.assertIsNone(self.engine.merge_stealth_data("abc123", "203.0.113.7", {"a": 1}))

        self.asset.views.append(view(source=DOWNLOADED_IMAGE))
        self.clock.now += 30
        rec = self.engine.merge_stealth_data("abc123", "203.0.113.7", {"screenWidth": 390, "screenHeight": 844})
        self.assertEqual(rec.source, DOWNLOADED_IMAGE)
        self.assertEqual(rec.screen_resolution, "390x844")

        self.clock.now += 31
        self.assertIsNone(self.engine.merge_stealth_data("abc123", "203.0.113.7", {"a": 2}))
        self.assertEqual(len(self.asset.views), 2)

    def test_update_browser(self):
        self.asset.views.append(view())
        rec = self.engine.update_browser("abc123", "203.0.113.7", "Brave")
        self.assertEqual(rec.browser, "Brave")
        self.assertIsNone(self.engine.update_browser("abc123", "198.51.100.9", "Brave"))

    def test_unknown_tracking_id(self):
        self.assertIsNone(self.engine.merge_enhanced("missing", "203.0.113.7", {}))
        self.assertIsNone(self.engine.record_click("missing", "203.0.113.7", click(), view()))

    def test_concurrent_clicks_produce_one_record(self):
        n = 32
        barrier = threading.Barrier(n)

        def worker():
            barrier.wait()
            self.engine.record_click("abc123", "203.0.113.7", click(), view(source=CLICKABLE_IMAGE))

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(self.asset.views), 1)
        self.assertEqual(self.asset.views[0].click_count, n)


if __name__ == "__main__":
    unittest.main()
