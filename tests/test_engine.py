import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fileapi.engine import StorageEngine
from fileapi.paths import InvalidPathError, ValidationError
from fileapi.storage import EXPOSED, HIDDEN, ItemNotFoundError, VisibilityStore

BASE_URL = "https://files.example.com"


class StorageEngineTestCase(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        self.public = root / "public"
        self.private = root / "private"
        self.store = VisibilityStore(self.public, self.private)
        self.store.ensure_roots()
        self.engine = StorageEngine(self.store, BASE_URL)

    def tearDown(self):
        self.storage_dir.cleanup()


class CreateAndStoreTests(StorageEngineTestCase):
    def test_create_folder_defaults_to_hidden(self):
        result = self.engine.create_folder("reports")
        self.assertEqual(
            result,
            {"visibility": HIDDEN, "url": None, "folder": "reports", "file": None},
        )
        self.assertTrue((self.private / "reports").is_dir())
        self.assertFalse((self.public / "reports").exists())

    def test_create_exposed_folder(self):
        result = self.engine.create_folder("media", expose=True)
        self.assertEqual(result["visibility"], EXPOSED)
        self.assertEqual(result["url"], f"{BASE_URL}/public/media/")
        self.assertTrue((self.public / "media").is_dir())

    def test_store_exposed_file_round_trip(self):
        result = self.engine.store_file("media", "logo.png", b"\x89PNG", expose=True)
        self.assertEqual(result["url"], f"{BASE_URL}/public/media/logo.png")
        self.assertEqual(result["file"], "logo.png")
        self.assertEqual((self.public / "media" / "logo.png").read_bytes(), b"\x89PNG")

    def test_store_file_requires_filename(self):
        with self.assertRaises(InvalidPathError) as context:
            self.engine.store_file("media", "", b"x")
        self.assertEqual(context.exception.message, "Filename is required")

    def test_invalid_names_touch_nothing(self):
        with self.assertRaises(InvalidPathError):
            self.engine.store_file("../escape", "a.txt", b"x")
        with self.assertRaises(InvalidPathError):
            self.engine.store_file("media", "../a.txt", b"x")
        self.assertEqual(list(self.public.iterdir()), [])
        self.assertEqual(list(self.private.iterdir()), [])


class ReportsScenarioTests(StorageEngineTestCase):
    def test_full_lifecycle(self):
        self.engine.create_folder("reports")
        self.engine.store_file("reports", "a.txt", b"hi", expose=False)

        listing = self.engine.list_folder("reports")
        self.assertEqual(listing["visibility"], HIDDEN)
        self.assertIsNone(listing["url"])
        self.assertEqual(len(listing["files"]), 1)
        self.assertEqual(listing["files"][0]["name"], "a.txt")
        self.assertEqual(listing["files"][0]["size"], 2)
        self.assertTrue(listing["files"][0]["modified"].endswith("Z"))

        self.engine.expose_folder("reports")
        listing = self.engine.list_folder("reports")
        self.assertEqual(listing["visibility"], EXPOSED)
        self.assertTrue(listing["url"].endswith("/public/reports/"))
        self.assertFalse((self.private / "reports").exists())

        renamed = self.engine.rename_item("file", "reports", "a.txt", "b.txt")
        self.assertEqual(renamed["visibility"], EXPOSED)
        self.assertEqual(renamed["url"], f"{BASE_URL}/public/reports/b.txt")
        self.assertTrue((self.public / "reports" / "b.txt").is_file())
        with self.assertRaises(ItemNotFoundError):
            self.engine.delete_item("reports", "a.txt")

        deleted = self.engine.delete_item("reports")
        self.assertEqual(deleted["deleted_kind"], "folder")
        self.assertEqual(deleted["visibility"], HIDDEN)
        self.assertIsNone(deleted["url"])
        with self.assertRaises(ItemNotFoundError):
            self.engine.delete_item("reports")


class VisibilityTransitionTests(StorageEngineTestCase):
    def test_expose_is_idempotent(self):
        self.engine.create_folder("reports")
        first = self.engine.expose_folder("reports")
        second = self.engine.expose_folder("reports")
        self.assertEqual(first, second)
        self.assertEqual(second["visibility"], EXPOSED)
        self.assertEqual(second["url"], f"{BASE_URL}/public/reports/")

    def test_unexpose_is_idempotent(self):
        self.engine.create_folder("reports", expose=True)
        first = self.engine.unexpose_folder("reports")
        second = self.engine.unexpose_folder("reports")
        self.assertEqual(first, second)
        self.assertEqual(second["visibility"], HIDDEN)
        self.assertIsNone(second["url"])
        self.assertTrue((self.private / "reports").is_dir())
        self.assertFalse((self.public / "reports").exists())

    def test_transitions_on_missing_folder(self):
        with self.assertRaises(ItemNotFoundError):
            self.engine.expose_folder("missing")
        with self.assertRaises(ItemNotFoundError):
            self.engine.unexpose_folder("missing")

    def test_unexpose_with_dual_existence_keeps_exposed_copy(self):
        self.store.write_file(HIDDEN, "reports", "old.txt", b"stale")
        self.store.write_file(EXPOSED, "reports", "new.txt", b"current")

        self.engine.unexpose_folder("reports")

        self.assertFalse((self.public / "reports").exists())
        names = sorted(p.name for p in (self.private / "reports").iterdir())
        self.assertEqual(names, ["new.txt"])

    def test_expose_with_dual_existence_is_noop(self):
        self.store.write_file(HIDDEN, "reports", "old.txt", b"stale")
        self.store.write_file(EXPOSED, "reports", "new.txt", b"current")

        result = self.engine.expose_folder("reports")

        self.assertEqual(result["visibility"], EXPOSED)
        self.assertTrue((self.public / "reports" / "new.txt").is_file())

    def test_expose_of_folder_removed_after_resolution(self):
        self.store.write_file(HIDDEN, "reports", "a.txt", b"hidden")
        with mock.patch.object(
            self.store, "move_between_roots", side_effect=FileNotFoundError("gone")
        ):
            with self.assertRaises(ItemNotFoundError) as context:
                self.engine.expose_folder("reports")
        self.assertEqual(context.exception.message, "Folder not found")
        self.assertEqual((self.private / "reports" / "a.txt").read_bytes(), b"hidden")
        self.assertFalse((self.public / "reports").exists())
        self.assertEqual(self.engine.locks._locks, {})

    def test_lost_unexpose_race_keeps_destination(self):
        self.store.write_file(HIDDEN, "reports", "old.txt", b"stale")
        self.store.write_file(EXPOSED, "reports", "new.txt", b"current")
        real_move = self.store.move_between_roots

        def source_vanishes(source, target, folder, filename=None):
            shutil.rmtree(self.store.path_for(source, folder))
            return real_move(source, target, folder, filename)

        with mock.patch.object(self.store, "move_between_roots", side_effect=source_vanishes):
            with self.assertRaises(ItemNotFoundError) as context:
                self.engine.unexpose_folder("reports")
        self.assertEqual(context.exception.message, "Folder not found")
        self.assertEqual((self.private / "reports" / "old.txt").read_bytes(), b"stale")


class DeleteTests(StorageEngineTestCase):
    def test_delete_removes_folder_from_both_roots(self):
        self.store.ensure_folder(HIDDEN, "x")
        self.store.ensure_folder(EXPOSED, "x")

        self.engine.delete_item("x")

        self.assertFalse((self.public / "x").exists())
        self.assertFalse((self.private / "x").exists())
        self.assertEqual(self.engine.list_root(), {"folders": []})

    def test_delete_file_from_both_roots(self):
        self.store.write_file(HIDDEN, "x", "a.txt", b"1")
        self.store.write_file(EXPOSED, "x", "a.txt", b"2")

        result = self.engine.delete_item("x", "a.txt")

        self.assertEqual(result["deleted_kind"], "file")
        self.assertEqual(result["file"], "a.txt")
        self.assertFalse((self.public / "x" / "a.txt").exists())
        self.assertFalse((self.private / "x" / "a.txt").exists())
        self.assertTrue((self.public / "x").is_dir())

    def test_delete_missing_file_reports_file_kind(self):
        self.engine.create_folder("x")
        with self.assertRaises(ItemNotFoundError) as context:
            self.engine.delete_item("x", "a.txt")
        self.assertEqual(context.exception.message, "File not found")

    def test_missing_deletes_leave_no_lock_entries(self):
        for index in range(200):
            with self.assertRaises(ItemNotFoundError):
                self.engine.delete_item(f"missing-{index}")
        self.assertEqual(self.engine.locks._locks, {})


class RenameTests(StorageEngineTestCase):
    def test_rename_hidden_file_stays_hidden(self):
        self.engine.store_file("reports", "a.txt", b"hi")
        result = self.engine.rename_item("file", "reports", "a.txt", "b.txt")
        self.assertEqual(
            result,
            {"visibility": HIDDEN, "url": None, "folder": "reports", "file": "b.txt"},
        )
        self.assertEqual((self.private / "reports" / "b.txt").read_bytes(), b"hi")
        self.assertFalse((self.private / "reports" / "a.txt").exists())

    def test_rename_exposed_folder(self):
        self.engine.store_file("reports", "a.txt", b"hi", expose=True)
        result = self.engine.rename_item("folder", "reports", None, "archive")
        self.assertEqual(result["visibility"], EXPOSED)
        self.assertEqual(result["folder"], "archive")
        self.assertIsNone(result["file"])
        self.assertEqual(result["url"], f"{BASE_URL}/public/archive/")
        self.assertTrue((self.public / "archive" / "a.txt").is_file())
        self.assertFalse((self.public / "reports").exists())

    def test_rename_rejects_unknown_type(self):
        with self.assertRaises(ValidationError) as context:
            self.engine.rename_item("link", "reports", None, "archive")
        self.assertEqual(context.exception.message, 'Type must be "file" or "folder"')

    def test_rename_file_requires_filename(self):
        with self.assertRaises(ValidationError) as context:
            self.engine.rename_item("file", "reports", None, "b.txt")
        self.assertEqual(
            context.exception.message, 'Filename is required when type is "file"'
        )

    def test_rename_validates_new_name(self):
        self.engine.store_file("reports", "a.txt", b"hi")
        with self.assertRaises(InvalidPathError) as context:
            self.engine.rename_item("file", "reports", "a.txt", "bad name.txt")
        self.assertEqual(context.exception.message, "Invalid filename")

        with self.assertRaises(InvalidPathError) as context:
            self.engine.rename_item("folder", "reports", None, "../up")
        self.assertEqual(context.exception.message, "Invalid folder path")

    def test_rename_missing_item(self):
        with self.assertRaises(ItemNotFoundError) as context:
            self.engine.rename_item("folder", "reports", None, "archive")
        self.assertEqual(context.exception.message, "Folder not found")


class ListingTests(StorageEngineTestCase):
    def test_list_missing_folder(self):
        with self.assertRaises(ItemNotFoundError):
            self.engine.list_folder("missing")

    def test_list_folder_removed_after_resolution(self):
        self.engine.create_folder("reports")
        with mock.patch.object(self.store, "list_files", side_effect=FileNotFoundError("gone")):
            with self.assertRaises(ItemNotFoundError) as context:
                self.engine.list_folder("reports")
        self.assertEqual(context.exception.message, "Folder not found")

    def test_list_root_deduplicates_with_exposed_precedence(self):
        self.store.ensure_folder(HIDDEN, "x")
        self.store.ensure_folder(EXPOSED, "x")
        self.store.ensure_folder(HIDDEN, "b")
        self.store.ensure_folder(EXPOSED, "a")

        folders = self.engine.list_root()["folders"]

        self.assertEqual(
            folders,
            [
                {"name": "a", "visibility": EXPOSED, "url": f"{BASE_URL}/public/a/"},
                {"name": "b", "visibility": HIDDEN, "url": None},
                {"name": "x", "visibility": EXPOSED, "url": f"{BASE_URL}/public/x/"},
            ],
        )

    def test_list_root_creates_missing_roots(self):
        self.storage_dir.cleanup()
        self.assertEqual(self.engine.list_root(), {"folders": []})
        self.assertTrue(self.public.is_dir())
        self.assertTrue(self.private.is_dir())


if __name__ == "__main__":
    unittest.main()
