import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from s3view.cache import (
    OPERATION_BUCKETS,
    OPERATION_OBJECTS,
    ListingCache,
    decode_objects,
)
from s3view.s3 import BucketInfo, ObjectInfo


class TestListingCache(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self._temp_dir.name)
        self.aws_config = self.root / "aws-config"
        self.aws_credentials = self.root / "aws-credentials"
        self.aws_config.write_text("[default]\nregion = us-east-1\n", encoding="utf-8")

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _cache(self, ttl_seconds: int = 3600) -> ListingCache:
        cache = ListingCache(self.root / "cache.json", ttl_seconds=ttl_seconds)
        cache._aws_config_path = lambda: self.aws_config
        cache._aws_credentials_path = lambda: self.aws_credentials
        return cache

    def _age_entries(self, cache: ListingCache, seconds: int) -> None:
        payload = json.loads(cache.path.read_text(encoding="utf-8"))
        saved_at = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        for entry in payload["entries"].values():
            entry["saved_at"] = saved_at.isoformat()
        cache.path.write_text(json.dumps(payload), encoding="utf-8")

    def test_missing_file_is_a_miss(self) -> None:
        cache = self._cache()

        self.assertIsNone(cache.load_buckets(None, "us-east-1"))

    def test_buckets_round_trip(self) -> None:
        cache = self._cache()
        created = datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc)
        buckets = [BucketInfo("alpha", created), BucketInfo("beta")]

        self.assertTrue(cache.save_buckets(None, "us-east-1", buckets))

        self.assertEqual(cache.load_buckets(None, "us-east-1"), buckets)
        self.assertIsNone(cache.load_buckets("dev", "us-east-1"))
        self.assertIsNone(cache.load_buckets(None, "eu-west-1"))

    def test_objects_are_keyed_by_bucket(self) -> None:
        cache = self._cache()
        objects = [ObjectInfo("a.txt", 10, storage_class="STANDARD")]

        cache.save_objects("dev", "us-east-1", "bucket-a", objects)

        self.assertEqual(cache.load_objects("dev", "us-east-1", "bucket-a"), objects)
        self.assertIsNone(cache.load_objects("dev", "us-east-1", "bucket-b"))

    def test_aws_config_change_invalidates(self) -> None:
        cache = self._cache()
        cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")])

        self.aws_credentials.write_text("[default]\n", encoding="utf-8")

        self.assertIsNone(cache.load_buckets(None, "us-east-1"))

    def test_expired_entries_are_misses(self) -> None:
        cache = self._cache(ttl_seconds=60)
        cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")])

        self._age_entries(cache, 120)

        self.assertIsNone(cache.load_buckets(None, "us-east-1"))

    def test_zero_ttl_never_expires(self) -> None:
        cache = self._cache(ttl_seconds=0)
        cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")])

        self._age_entries(cache, 10 * 365 * 24 * 3600)

        self.assertEqual(cache.load_buckets(None, "us-east-1"), [BucketInfo("alpha")])

    def test_invalidate_single_entry(self) -> None:
        cache = self._cache()
        cache.save_objects(None, "us-east-1", "bucket-a", [ObjectInfo("a", 1)])
        cache.save_objects(None, "us-east-1", "bucket-b", [ObjectInfo("b", 2)])

        cache.invalidate(OPERATION_OBJECTS, (None, "us-east-1", "bucket-a"))

        self.assertIsNone(cache.load_objects(None, "us-east-1", "bucket-a"))
        self.assertIsNotNone(cache.load_objects(None, "us-east-1", "bucket-b"))

    def test_invalidate_operation(self) -> None:
        cache = self._cache()
        cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")])
        cache.save_objects(None, "us-east-1", "bucket-a", [ObjectInfo("a", 1)])
        cache.save_objects("dev", "us-east-1", "bucket-b", [ObjectInfo("b", 2)])

        cache.invalidate(OPERATION_OBJECTS)

        self.assertIsNotNone(cache.load_buckets(None, "us-east-1"))
        self.assertIsNone(cache.load_objects(None, "us-east-1", "bucket-a"))
        self.assertIsNone(cache.load_objects("dev", "us-east-1", "bucket-b"))

    def test_invalidate_everything(self) -> None:
        cache = self._cache()
        cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")])
        cache.put(OPERATION_BUCKETS, ("dev", None), [])

        cache.invalidate()

        self.assertIsNone(cache.load_buckets(None, "us-east-1"))
        self.assertIsNone(cache.get(OPERATION_BUCKETS, ("dev", None)))

    def test_corrupt_file_is_ignored(self) -> None:
        cache = self._cache()
        cache.path.write_text("{not json", encoding="utf-8")

        self.assertIsNone(cache.load_buckets(None, "us-east-1"))
        self.assertTrue(cache.save_buckets(None, "us-east-1", [BucketInfo("alpha")]))
        self.assertEqual(cache.load_buckets(None, "us-east-1"), [BucketInfo("alpha")])

    def test_decode_objects_skips_bad_rows(self) -> None:
        rows = [
            {"key": "good", "size": 5, "last_modified": "2024-01-02T03:04:05Z"},
            {"key": "", "size": 1},
            "garbage",
            {"key": "no-size", "size": "big"},
        ]

        objects = decode_objects(rows)

        self.assertEqual([info.key for info in objects], ["good", "no-size"])
        self.assertEqual(objects[0].last_modified, datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        self.assertEqual(objects[1].size, 0)


if __name__ == "__main__":
    unittest.main()
