import json
import tempfile
import threading
import unittest
from pathlib import Path

from filedrop.errors import CorruptIndexError
from filedrop.index import MetadataStore, parse_index
from filedrop.models import FileRecord

BASE_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now=BASE_MS):
        self.now = now

    def __call__(self):
        return self.now


def make_record(code, stored_name=None, **overrides):
    values = {
        "pickup_code": code,
        "original_name": f"{code.lower()}.txt",
        "stored_name": stored_name or f"{code.lower()}-stored.txt",
        "size": 5,
        "uploaded_at": BASE_MS,
        "expires_at": BASE_MS + 1000,
    }
    values.update(overrides)
    return FileRecord(**values)


class MetadataStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        self.index_path = self.data_dir / "files.json"
        self.clock = FakeClock()
        self.store = MetadataStore(self.index_path, clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_index_reads_as_empty(self):
        self.assertEqual(self.store.read_all(), {})
        self.assertIsNone(self.store.get("AAAAAA"))

    def test_put_get_and_remove(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        fetched = self.store.get("AAAAAA")
        self.assertEqual(fetched.stored_name, "aaaaaa-stored.txt")

        removed = self.store.remove("AAAAAA")
        self.assertEqual(removed.pickup_code, "AAAAAA")
        self.assertIsNone(self.store.get("AAAAAA"))
        self.assertIsNone(self.store.remove("AAAAAA"))

    def test_index_persists_snake_case_keys(self):
        self.store.put("AAAAAA", make_record("AAAAAA", description="hi"))
        raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        self.assertEqual(raw["AAAAAA"]["stored_name"], "aaaaaa-stored.txt")
        self.assertEqual(raw["AAAAAA"]["download_count"], 0)
        self.assertEqual(raw["AAAAAA"]["description"], "hi")

    def test_readers_receive_copies(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        fetched = self.store.get("AAAAAA")
        fetched.download_count = 99
        self.assertEqual(self.store.get("AAAAAA").download_count, 0)

        records = self.store.read_all()
        records["AAAAAA"].original_name = "changed"
        self.assertEqual(self.store.get("AAAAAA").original_name, "aaaaaa.txt")

    def test_fresh_store_sees_persisted_records(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        reopened = MetadataStore(self.index_path)
        self.assertIn("AAAAAA", reopened.read_all())

    def test_transaction_discards_changes_on_error(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as records:
                del records["AAAAAA"]
                raise RuntimeError("boom")
        self.assertIsNotNone(self.store.get("AAAAAA"))

    def test_unchanged_transaction_does_not_write(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        before = self.store.list_backups()
        with self.store.transaction() as records:
            self.assertIn("AAAAAA", records)
        self.assertEqual(self.store.list_backups(), before)

    def test_concurrent_transactions_do_not_lose_updates(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))

        def bump():
            for _ in range(10):
                with self.store.transaction() as records:
                    records["AAAAAA"].download_count += 1

        threads = [threading.Thread(target=bump) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.store.get("AAAAAA").download_count, 50)

    def test_corrupt_index_raises(self):
        self.index_path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(CorruptIndexError):
            self.store.read_all()
        with self.assertRaises(CorruptIndexError):
            self.store.put("AAAAAA", make_record("AAAAAA"))
        # The unreadable file is left untouched for inspection.
        self.assertEqual(self.index_path.read_text(encoding="utf-8"), "{not json")

    def test_non_object_index_is_corrupt(self):
        self.index_path.write_text("[]", encoding="utf-8")
        with self.assertRaises(CorruptIndexError):
            self.store.read_all()

    def test_backups_rotate_and_keep_three(self):
        for number in range(6):
            self.clock.now += 1
            code = f"AAAAA{number}"
            self.store.put(code, make_record(code))

        backups = self.store.list_backups()
        self.assertEqual(len(backups), 3)
        stamps = [int(path.name.rsplit(".", 1)[-1]) for path in backups]
        self.assertEqual(stamps, sorted(stamps, reverse=True))

        newest = json.loads(backups[0].read_text(encoding="utf-8"))
        self.assertEqual(len(newest), 5)

    def test_backup_stamps_increase_with_frozen_clock(self):
        for number in range(3):
            code = f"BBBBB{number}"
            self.store.put(code, make_record(code))
        stamps = [int(path.name.rsplit(".", 1)[-1]) for path in self.store.list_backups()]
        self.assertEqual(len(set(stamps)), len(stamps))

    def test_compact_backups_keeps_requested_count(self):
        store = MetadataStore(self.index_path, backup_count=10, clock=self.clock)
        for number in range(8):
            code = f"CCCCC{number}"
            store.put(code, make_record(code))
        self.assertEqual(len(store.list_backups()), 7)

        removed, failed = store.compact_backups(2)
        self.assertEqual((removed, failed), (5, 0))
        self.assertEqual(len(store.list_backups()), 2)

    def test_restore_backup_recovers_from_corruption(self):
        self.store.put("AAAAAA", make_record("AAAAAA"))
        self.store.put("BBBBBB", make_record("BBBBBB"))
        self.index_path.write_text("garbage", encoding="utf-8")

        restored = self.store.restore_backup()

        self.assertEqual(restored, 1)
        self.assertEqual(set(self.store.read_all()), {"AAAAAA"})
        preserved = list(self.data_dir.glob("files.json.corrupt.*"))
        self.assertEqual(len(preserved), 1)
        self.assertEqual(preserved[0].read_text(encoding="utf-8"), "garbage")

    def test_restore_without_backups_raises(self):
        self.index_path.write_text("garbage", encoding="utf-8")
        with self.assertRaises(CorruptIndexError):
            self.store.restore_backup()

    def test_normalize_rewrites_non_canonical_records(self):
        record = make_record("AAAAAA").to_dict()
        record.pop("tags")
        record["legacy_field"] = "x"
        self.index_path.write_text(json.dumps({"AAAAAA": record}), encoding="utf-8")

        self.assertEqual(self.store.normalize(), 1)
        raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        self.assertNotIn("legacy_field", raw["AAAAAA"])
        self.assertEqual(raw["AAAAAA"]["tags"], "")
        self.assertEqual(self.store.normalize(), 0)


class ParseIndexTests(unittest.TestCase):
    def test_mismatched_key_is_corrupt(self):
        text = json.dumps({"AAAAAA": make_record("BBBBBB").to_dict()})
        with self.assertRaises(CorruptIndexError):
            parse_index(text)

    def test_missing_required_field_is_corrupt(self):
        entry = make_record("AAAAAA").to_dict()
        del entry["stored_name"]
        with self.assertRaises(CorruptIndexError):
            parse_index(json.dumps({"AAAAAA": entry}))

    def test_optional_fields_default(self):
        entry = {
            "pickup_code": "AAAAAA",
            "original_name": "a.txt",
            "stored_name": "stored-a.txt",
            "size": 1,
            "uploaded_at": BASE_MS,
            "expires_at": BASE_MS + 1,
        }
        record = parse_index(json.dumps({"AAAAAA": entry}))["AAAAAA"]
        self.assertEqual(record.mime_type, "application/octet-stream")
        self.assertEqual(record.download_count, 0)
        self.assertIsNone(record.last_download_at)


if __name__ == "__main__":
    unittest.main()
