import tempfile
import unittest
from pathlib import Path

from calsync.cache import GENERATED_KEY_META, SnapshotCache, cache_key
from calsync.models import CacheConfig
from calsync.state_store import StateStore

PRINCIPAL = "https://dav.example.com:alice"


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class SnapshotCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.clock = FakeClock()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def build(self, **config) -> SnapshotCache:
        return SnapshotCache(self.state_store, CacheConfig(**config), clock=self.clock)

    def test_write_then_read(self) -> None:
        cache = self.build(secret="hunter2")
        self.assertTrue(cache.write(PRINCIPAL, "core", {"events": [1, 2]}))
        self.assertEqual(cache.read(PRINCIPAL, "core"), {"events": [1, 2]})

    def test_entry_is_not_stored_in_clear(self) -> None:
        cache = self.build(secret="hunter2")
        cache.write(PRINCIPAL, "core", {"title": "Dentist"})
        raw = self.state_store.get_cache_entry(cache_key("v1", PRINCIPAL, "core"))
        self.assertIsNotNone(raw)
        self.assertNotIn("Dentist", raw)

    def test_expired_entry_reads_as_none(self) -> None:
        cache = self.build(secret="hunter2", ttl_seconds=60)
        cache.write(PRINCIPAL, "core", ["x"])
        self.clock.now += 61
        self.assertIsNone(cache.read(PRINCIPAL, "core"))
        self.assertEqual(cache.read(PRINCIPAL, "core", ttl_seconds=120), ["x"])

    def test_wrong_key_reads_as_none(self) -> None:
        self.build(secret="hunter2").write(PRINCIPAL, "core", ["x"])
        self.assertIsNone(self.build(secret="other").read(PRINCIPAL, "core"))

    def test_principal_and_purpose_scope_entries(self) -> None:
        cache = self.build(secret="hunter2")
        cache.write(PRINCIPAL, "core", ["x"])
        self.assertIsNone(cache.read("https://dav.example.com:bob", "core"))
        self.assertIsNone(cache.read(PRINCIPAL, "calendars"))

    def test_no_principal_disables_cache(self) -> None:
        cache = self.build(secret="hunter2")
        self.assertFalse(cache.write("", "core", ["x"]))
        self.assertIsNone(cache.read("", "core"))

    def test_generated_key_is_persisted(self) -> None:
        self.build().write(PRINCIPAL, "core", ["x"])
        self.assertTrue(self.state_store.get_meta(GENERATED_KEY_META))
        self.assertEqual(self.build().read(PRINCIPAL, "core"), ["x"])

    def test_invalidate(self) -> None:
        cache = self.build(secret="hunter2")
        cache.write(PRINCIPAL, "core", ["x"])
        cache.invalidate(PRINCIPAL, "core")
        self.assertIsNone(cache.read(PRINCIPAL, "core"))

    def test_version_bump_orphans_old_entries(self) -> None:
        self.build(secret="hunter2").write(PRINCIPAL, "core", ["x"])
        self.assertIsNone(self.build(secret="hunter2", version="v2").read(PRINCIPAL, "core"))


if __name__ == "__main__":
    unittest.main()
