"""
Settings, storage Url parsing and transfer plan validation.
"""

import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from azsync.config import (
    EMULATOR_ACCOUNT_KEY,
    AppSettings,
    Direction,
    FileKind,
    Operation,
    RetryPolicy,
    TransferPlan,
    build_connection_string,
    is_storage_url,
    parse_storage_url,
    validate_account_key,
)
from azsync.errors import ConfigError

KEY = EMULATOR_ACCOUNT_KEY
URL = "https://acct.blob.core.windows.net/c"


class TestAppSettings(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_defaults_without_file(self):
        settings = AppSettings.load(self.test_dir, environ={})
        self.assertIsNone(settings.source)
        self.assertEqual(settings.concurrency, 8)

    def test_reads_json_file(self):
        (self.test_dir / "appsettings.json").write_text(
            json.dumps({"Source": "a.bin", "DestKey": "k", "Pattern": "*.bin"})
        )
        settings = AppSettings.load(self.test_dir, environ={})
        self.assertEqual(settings.source, "a.bin")
        self.assertEqual(settings.dest_key, "k")
        self.assertEqual(settings.pattern, "*.bin")

    def test_environment_overrides_file(self):
        (self.test_dir / "appsettings.json").write_text(json.dumps({"Destination": "file-value"}))
        settings = AppSettings.load(
            self.test_dir, environ={"Destination": "env-value", "DEST_KEY": "k2", "CONCURRENCY": "3"}
        )
        self.assertEqual(settings.destination, "env-value")
        self.assertEqual(settings.dest_key, "k2")
        self.assertEqual(settings.concurrency, 3)

    def test_dotenv_is_loaded(self):
        (self.test_dir / ".env").write_text("LOG_PATH=/tmp/azsync-logs\n")
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("LOG_PATH", None)
            settings = AppSettings.load(self.test_dir)
        self.assertEqual(settings.log_path, "/tmp/azsync-logs")

    def test_bad_json(self):
        (self.test_dir / "appsettings.json").write_text("{not json")
        with self.assertRaises(ConfigError):
            AppSettings.load(self.test_dir, environ={})

    def test_bad_concurrency(self):
        with self.assertRaises(ConfigError):
            AppSettings.load(self.test_dir, environ={"CONCURRENCY": "many"})
        with self.assertRaises(ConfigError):
            AppSettings.load(self.test_dir, environ={"CONCURRENCY": "0"})


class TestStorageUrl(unittest.TestCase):

    def test_account_host(self):
        url = parse_storage_url("https://acct.blob.core.windows.net/c/dir/t.pkg")
        self.assertEqual(url.account, "acct")
        self.assertEqual(url.container, "c")
        self.assertEqual(url.blob, "dir/t.pkg")
        self.assertFalse(url.path_style)
        self.assertEqual(url.endpoint, "https://acct.blob.core.windows.net")
        self.assertEqual(str(url), "https://acct.blob.core.windows.net/c/dir/t.pkg")

    def test_container_only(self):
        url = parse_storage_url(URL)
        self.assertEqual(url.container, "c")
        self.assertIsNone(url.blob)

    def test_emulator_path_style(self):
        url = parse_storage_url("http://127.0.0.1:10000/devstoreaccount1/c/t.pkg")
        self.assertTrue(url.path_style)
        self.assertEqual(url.account, "devstoreaccount1")
        self.assertEqual(url.container, "c")
        self.assertEqual(url.endpoint, "http://127.0.0.1:10000/devstoreaccount1")

    def test_rejects_missing_container(self):
        with self.assertRaises(ConfigError):
            parse_storage_url("https://acct.blob.core.windows.net/")

    def test_rejects_other_schemes(self):
        with self.assertRaises(ConfigError):
            parse_storage_url("ftp://acct.blob.core.windows.net/c")

    def test_is_storage_url(self):
        self.assertTrue(is_storage_url("HTTPS://x.y/c"))
        self.assertFalse(is_storage_url("/tmp/file"))
        self.assertFalse(is_storage_url(None))

    def test_connection_string(self):
        conn = build_connection_string(parse_storage_url(URL), KEY)
        self.assertIn("AccountName=acct;", conn)
        self.assertIn(f"AccountKey={KEY};", conn)
        self.assertIn("BlobEndpoint=https://acct.blob.core.windows.net;", conn)


class TestAccountKey(unittest.TestCase):

    def test_valid_key(self):
        self.assertEqual(validate_account_key(f"  {KEY} "), KEY)

    def test_missing_padding_is_accepted(self):
        validate_account_key(KEY.rstrip("="))

    def test_empty_key(self):
        with self.assertRaises(ConfigError):
            validate_account_key("")

    def test_not_base64(self):
        with self.assertRaises(ConfigError):
            validate_account_key("not*base64!")


class TestTransferPlan(unittest.TestCase):

    def _plan(self, **overrides):
        values = dict(
            operation=Operation.SYNC,
            direction=Direction.UP,
            source="t.pkg",
            destination=URL,
            dest_url=parse_storage_url(URL),
            dest_key=KEY,
        )
        values.update(overrides)
        return TransferPlan(**values)

    def test_valid_upload(self):
        plan = self._plan().validate()
        self.assertEqual(plan.block_size, 4096 * 1024)
        self.assertEqual(plan.remote_url.container, "c")
        self.assertEqual(plan.local_path, Path("t.pkg"))
        self.assertEqual(plan.file_kind, FileKind.SINGLE_FILE)

    def test_content_type_from_extension(self):
        plan = self._plan()
        self.assertEqual(plan.resolve_content_type(Path("t.pkg")), "application/zip")
        self.assertEqual(plan.resolve_content_type(Path("REPORT.CSV")), "text/csv")
        self.assertEqual(plan.resolve_content_type(Path("t.bin")), "application/octet-stream")

    def test_content_type_flag_wins(self):
        plan = self._plan(content_type="text/plain")
        self.assertEqual(plan.resolve_content_type(Path("t.zip")), "text/plain")

    def test_missing_destination(self):
        with self.assertRaises(ConfigError):
            self._plan(destination="", dest_url=None).validate()

    def test_needs_one_url(self):
        with self.assertRaises(ConfigError):
            self._plan(destination="out.bin", dest_url=None).validate()

    def test_rejects_two_urls(self):
        with self.assertRaises(ConfigError):
            self._plan(source=URL + "/x", source_url=parse_storage_url(URL + "/x")).validate()

    def test_sync_down_is_rejected(self):
        with self.assertRaises(ConfigError):
            self._plan(
                direction=Direction.DOWN,
                source=URL + "/t.pkg",
                source_url=parse_storage_url(URL + "/t.pkg"),
                destination="t.pkg",
                dest_url=None,
                source_key=KEY,
            ).validate()

    def test_copy_down_needs_blob(self):
        with self.assertRaises(ConfigError):
            self._plan(
                operation=Operation.COPY,
                direction=Direction.DOWN,
                source=URL,
                source_url=parse_storage_url(URL),
                destination="t.pkg",
                dest_url=None,
                source_key=KEY,
            ).validate()

    def test_missing_key(self):
        with self.assertRaises(ConfigError):
            self._plan(dest_key=None).validate()

    def test_emulator_needs_no_key(self):
        plan = self._plan(dest_key=None, use_emulator=True).validate()
        self.assertIn("AccountName=devstoreaccount1;", plan.connection_string())
        self.assertIn("BlobEndpoint=http://127.0.0.1:10000/devstoreaccount1;", plan.connection_string())

    def test_block_size_limits(self):
        with self.assertRaises(ConfigError):
            self._plan(block_size=0).validate()
        with self.assertRaises(ConfigError):
            self._plan(block_size=4001 * 1024 * 1024).validate()

    def test_negative_retry(self):
        with self.assertRaises(ConfigError):
            self._plan(retry=RetryPolicy(count=-1)).validate()

    def test_signature_options_need_sync(self):
        with self.assertRaises(ConfigError):
            self._plan(operation=Operation.COPY, remote_signature=True).validate()

    def test_signature_file_and_remote_conflict(self):
        with self.assertRaises(ConfigError):
            self._plan(signature_file="t.pkg.sig", remote_signature=True).validate()

    def test_default_journal_path(self):
        plan = self._plan(source="/data/t.pkg")
        self.assertEqual(plan.journal_file(), Path("/data/t.pkg").resolve().with_name("t.pkg.azsj"))
        self.assertEqual(self._plan(journal_path="/j/x.azsj").journal_file(), Path("/j/x.azsj"))

    def test_retry_delay_is_linear(self):
        policy = RetryPolicy(count=3, wait=2)
        self.assertEqual([policy.delay(n) for n in (1, 2, 3)], [2, 4, 6])


if __name__ == "__main__":
    unittest.main()
