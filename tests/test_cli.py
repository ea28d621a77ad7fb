"""
Command line tests: option handling, plan building and exit codes.
"""

import logging
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from azsync import cli
from azsync.config import EMULATOR_ACCOUNT_KEY, AppSettings, Direction, FileKind, Operation
from azsync.errors import ConfigError, EngineInitError, SourceNotFoundError, StorageError

URL = "https://acct.blob.core.windows.net/c"
KEY = EMULATOR_ACCOUNT_KEY


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.path = self.test_dir / "t.pkg"
        self.path.write_bytes(b"x" * 100)
        self.cwd = os.getcwd()
        os.chdir(self.test_dir)
        self.env = mock.patch.dict(os.environ, {"LOG_PATH": str(self.test_dir / "logs")})
        self.env.start()

    def tearDown(self):
        self.env.stop()
        os.chdir(self.cwd)
        for handler in list(logging.getLogger("azsync").handlers):
            logging.getLogger("azsync").removeHandler(handler)
            handler.close()
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _args(self, *argv):
        return cli.build_parser().parse_args(list(argv))


class TestBuildPlan(CliTestCase):

    def test_sync_up(self):
        args = self._args("sync", "-s", str(self.path), "-d", URL, "--dest-key", KEY, "--block-size", "256")
        plan = cli.build_plan(args, AppSettings())
        self.assertIs(plan.operation, Operation.SYNC)
        self.assertIs(plan.direction, Direction.UP)
        self.assertEqual(plan.block_size, 256 * 1024)
        self.assertEqual(plan.dest_url.container, "c")
        self.assertIs(plan.file_kind, FileKind.SINGLE_FILE)

    def test_copy_down(self):
        args = self._args("copy", "-s", URL + "/t.pkg", "-d", "out.bin", "--source-key", KEY)
        plan = cli.build_plan(args, AppSettings())
        self.assertIs(plan.direction, Direction.DOWN)
        self.assertEqual(plan.source_url.blob, "t.pkg")

    def test_settings_fill_missing_flags(self):
        settings = AppSettings(source=str(self.path), destination=URL, dest_key=KEY, concurrency=2)
        plan = cli.build_plan(self._args("copy"), settings)
        self.assertEqual(plan.source, str(self.path))
        self.assertEqual(plan.concurrency, 2)

    def test_flags_win_over_settings(self):
        other = self.test_dir / "other.pkg"
        other.write_bytes(b"y")
        settings = AppSettings(source=str(self.path), destination=URL, dest_key=KEY)
        plan = cli.build_plan(self._args("copy", "-s", str(other)), settings)
        self.assertEqual(plan.source, str(other))

    def test_emulator_key(self):
        args = self._args("copy", "-s", str(self.path), "-d", URL, "--use-emulator")
        plan = cli.build_plan(args, AppSettings())
        self.assertEqual(plan.dest_key, KEY)

    def test_retry_options(self):
        args = self._args("copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY, "-r", "5", "--retry-wait", "1")
        plan = cli.build_plan(args, AppSettings())
        self.assertEqual((plan.retry.count, plan.retry.wait), (5, 1))

    def test_signature_options(self):
        args = self._args(
            "sync", "-s", str(self.path), "-d", URL, "--dest-key", KEY, "-B", "prev.sig", "--overwrite"
        )
        plan = cli.build_plan(args, AppSettings())
        self.assertEqual(plan.signature_blob, "prev.sig")
        self.assertTrue(plan.overwrite)

    def test_directory_source(self):
        args = self._args("copy", "-s", str(self.test_dir), "-d", URL, "--dest-key", KEY)
        self.assertIs(cli.build_plan(args, AppSettings()).file_kind, FileKind.DIRECTORY)

    def test_pattern_selects_multiple_files(self):
        args = self._args("copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY, "-p", "*.pkg")
        self.assertIs(cli.build_plan(args, AppSettings()).file_kind, FileKind.MULTIPLE_FILES)

    def test_missing_source(self):
        args = self._args("copy", "-s", str(self.test_dir / "missing"), "-d", URL, "--dest-key", KEY)
        with self.assertRaises(SourceNotFoundError):
            cli.build_plan(args, AppSettings())

    def test_missing_key(self):
        with self.assertRaises(ConfigError):
            cli.build_plan(self._args("copy", "-s", str(self.path), "-d", URL), AppSettings())

    def test_bad_url(self):
        args = self._args("copy", "-s", str(self.path), "-d", "https://nohost/", "--dest-key", KEY)
        with self.assertRaises(ConfigError):
            cli.build_plan(args, AppSettings())


class TestMain(CliTestCase):

    def _engine(self, ok=True, error=None):
        engine = mock.Mock()
        engine.transfer.return_value = ok
        engine.error = error
        return engine

    def test_success(self):
        with mock.patch.object(cli, "TransferEngine", return_value=self._engine()) as factory:
            code = cli.main(["copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 0)
        factory.assert_called_once()
        self.assertTrue((self.test_dir / "logs" / "azsync.log").exists())

    def test_key_watcher_is_stopped_and_joined(self):
        with mock.patch.object(cli, "TransferEngine", return_value=self._engine()), \
                mock.patch.object(cli, "KeyWatcher") as watcher_cls:
            self.assertEqual(cli.main(["copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY]), 0)
        watcher = watcher_cls.return_value
        watcher.stop.assert_called_once_with()
        watcher.join.assert_called_once_with(timeout=1)

    def test_transfer_failure(self):
        engine = self._engine(ok=False, error=StorageError("boom"))
        with mock.patch.object(cli, "TransferEngine", return_value=engine):
            code = cli.main(["sync", "-s", str(self.path), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 5)

    def test_engine_init_failure(self):
        with mock.patch.object(cli, "TransferEngine", side_effect=EngineInitError("no storage")):
            code = cli.main(["copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 4)

    def test_directory_source_fails_engine_init(self):
        code = cli.main(["copy", "-s", str(self.test_dir), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 4)

    def test_invalid_options(self):
        self.assertEqual(cli.main(["copy", "-s", str(self.path), "-d", URL]), 2)
        self.assertEqual(cli.main(["copy", "--no-such-flag"]), 2)
        self.assertEqual(cli.main([]), 2)

    def test_file_not_found(self):
        code = cli.main(["copy", "-s", str(self.test_dir / "missing"), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 3)

    def test_unhandled_exception(self):
        with mock.patch.object(cli, "TransferEngine", side_effect=RuntimeError("bug")):
            code = cli.main(["copy", "-s", str(self.path), "-d", URL, "--dest-key", KEY])
        self.assertEqual(code, 1)

    def test_version(self):
        with mock.patch("sys.stdout"):
            self.assertEqual(cli.main(["--version"]), 0)

    def test_gen(self):
        target = self.test_dir / "g.pkg"
        self.assertEqual(cli.main(["gen", "--name", str(target), "--size", "1", "--part-size", "256"]), 0)
        self.assertTrue(target.exists())

    def test_gen_failure(self):
        self.assertEqual(cli.main(["gen", "--name", str(self.path), "--size", "1"]), 6)

    def test_settings_file(self):
        (self.test_dir / "appsettings.json").write_text(
            '{"Source": "%s", "Destination": "%s", "DestKey": "%s"}' % (self.path.as_posix(), URL, KEY)
        )
        with mock.patch.object(cli, "TransferEngine", return_value=self._engine()) as factory:
            self.assertEqual(cli.main(["copy"]), 0)
        plan = factory.call_args[0][0]
        self.assertEqual(plan.source, self.path.as_posix())


class TestExitCode(unittest.TestCase):

    def test_values(self):
        self.assertEqual(
            [int(c) for c in cli.ExitCode],
            [0, 1, 2, 3, 4, 5, 6],
        )


if __name__ == "__main__":
    unittest.main()
