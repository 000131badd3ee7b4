import asyncio
import functools
import json
import tempfile
import unittest
from unittest import mock
from pathlib import Path
from historysync.dispatch import TaskDispatcher
from historysync.models import AccountConfig, CodeConfig, HistoryRecord, SyncOutcome
from historysync.orchestrator import SyncOrchestrator, parse_history
from historysync.errors import MalformedPayload
from historysync.state import HistoryStore, SettingsStore
from historysync.clients.base import build_backend
from tests.fakes import FakeDav, FakeRemote

ACCOUNT = AccountConfig(url="https://dav.example.com/dav", username="u", password="p")
DAV_HISTORY = "/dav/xmbox_history.json"
READ_HISTORY = "/raw/CODE1234/xmbox_history.json"
READ_SETTINGS = "/raw/CODE1234/xmbox_settings.json"


def code_config(token=None):
    # reads from /raw, writes (when allowed) to /upload so downloads see only what the test seeds
    return CodeConfig(
        sync_code="CODE1234",
        public_base_url="https://pub.example.com/raw",
        write_token=token,
        write_base_url="https://pub.example.com/upload",
    )


def wire(*records):
    return json.dumps([{"key": k, "createTime": t, "position": p} for k, t, p in records]).encode()


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.history = HistoryStore(str(base / "history.json"), persist=False)
        self.prefs = SettingsStore(str(base / "settings.json"), persist=False)
        self.remote = FakeRemote()
        self.config = ACCOUNT
        self.dispatcher = TaskDispatcher()
        self.orch = SyncOrchestrator(
            self.history, self.prefs, self.remote.client(), self.dispatcher,
            config_loader=lambda: self.config,
            backend_factory=functools.partial(build_backend, dav=FakeDav(self.remote)),
        )

    def tearDown(self):
        self.tmp.cleanup()

    def seed_local(self, *records):
        self.history.insert([HistoryRecord(key=k, create_time=t, position=p) for k, t, p in records])

    def local_view(self):
        return {r.key: (r.create_time, r.position) for r in self.history.find_all()}


class TestHistorySync(OrchestratorTestCase):
    async def test_not_configured_makes_no_requests(self):
        self.config = AccountConfig(url="https://dav.example.com/dav")
        report = await self.orch.sync_history()
        self.assertEqual(report.outcome, SyncOutcome.NOT_CONFIGURED)
        self.assertFalse(report.success)
        self.assertFalse(self.orch.is_configured())
        self.assertEqual(self.remote.requests, [])

    async def test_account_mode_uploads_before_download(self):
        self.seed_local(("A", 100, 5))
        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.SUCCESS)
        self.assertTrue(report.success)
        self.assertEqual(report.uploaded, 1)
        methods = self.remote.methods(DAV_HISTORY)
        self.assertLess(methods.index("PUT"), methods.index("GET"))
        self.assertEqual(json.loads(self.remote.files[DAV_HISTORY]),
                         [{"key": "A", "createTime": 100, "position": 5}])
        self.assertFalse(self.orch.is_syncing)

    async def test_read_only_code_mode_merges_remote(self):
        self.config = code_config()
        self.seed_local(("A", 100, 5))
        self.remote.files[READ_HISTORY] = wire(("A", 200, 1), ("B", 50, 0))

        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.UPLOAD_FAILED)
        self.assertTrue(report.success)
        self.assertIn("write token", report.message)
        self.assertEqual((report.inserted, report.updated, report.remote_count), (1, 1, 2))
        self.assertEqual(self.local_view(), {"A": (200, 1), "B": (50, 0)})

        again = await self.orch.sync_history()
        self.assertEqual((again.inserted, again.updated), (0, 0))

    async def test_remote_absent_is_nothing_to_merge(self):
        self.config = code_config(token="t")
        self.seed_local(("A", 100, 5))

        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.SUCCESS)
        self.assertIn("nothing to merge", report.message)
        self.assertIn(("PUT", "/upload/CODE1234/xmbox_history.json"), self.remote.requests)

    async def test_malformed_remote_degrades_to_upload_only(self):
        self.config = code_config(token="t")
        self.seed_local(("A", 100, 5))
        self.remote.files[READ_HISTORY] = b"{not json"

        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.UPLOAD_ONLY)
        self.assertTrue(report.success)
        self.assertEqual(self.local_view(), {"A": (100, 5)})

    async def test_malformed_and_upload_failed_is_failure(self):
        self.config = code_config()
        self.remote.files[READ_HISTORY] = b'{"key": "A"}'
        report = await self.orch.sync_history()
        self.assertEqual(report.outcome, SyncOutcome.FAILED)
        self.assertFalse(report.success)

    async def test_download_failure_after_upload(self):
        self.seed_local(("A", 100, 5))
        self.remote.fail("GET", DAV_HISTORY, 500)

        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.DOWNLOAD_FAILED)
        self.assertFalse(report.success)
        self.assertIn("HTTP 500", report.message)

    async def test_upload_failure_does_not_abort_download(self):
        self.remote.fail("PUT", DAV_HISTORY, 507)
        self.remote.files[DAV_HISTORY] = wire(("B", 50, 0))

        report = await self.orch.sync_history()

        self.assertEqual(report.outcome, SyncOutcome.UPLOAD_FAILED)
        self.assertEqual(self.local_view(), {"B": (50, 0)})

    async def test_container_failure_is_not_fatal(self):
        self.remote.fail("MKCOL", "/dav/", 405)
        report = await self.orch.sync_history()
        self.assertEqual(report.outcome, SyncOutcome.SUCCESS)

    async def test_single_flight(self):
        self.config = code_config(token="t")
        self.remote.put_gate = asyncio.Event()
        reports = []

        first = await self.orch.sync_history(background=True, callback=reports.append)
        self.assertEqual(first.outcome, SyncOutcome.SCHEDULED)
        await asyncio.wait_for(self.remote.put_started.wait(), 1)
        self.assertTrue(self.orch.is_syncing)

        second = await self.orch.sync_history()
        self.assertEqual(second.outcome, SyncOutcome.ALREADY_RUNNING)
        third = await self.orch.sync_settings(background=True, callback=reports.append)
        self.assertEqual(third.outcome, SyncOutcome.ALREADY_RUNNING)

        self.remote.put_gate.set()
        await self.dispatcher.drain()

        self.assertEqual(self.remote.methods("/upload/CODE1234/xmbox_history.json").count("PUT"), 1)
        self.assertEqual([r.outcome for r in reports], [SyncOutcome.ALREADY_RUNNING, SyncOutcome.SUCCESS])
        self.assertFalse(self.orch.is_syncing)

    async def test_background_delivers_exactly_one_callback(self):
        reports = []
        await self.orch.sync_history(background=True, callback=reports.append)
        await self.dispatcher.drain()
        self.assertEqual(len(reports), 1)
        self.assertTrue(reports[0].success)
        self.assertGreater(reports[0].finished_at, 0)

    async def test_guard_released_after_unexpected_error(self):
        def broken():
            raise RuntimeError("disk on fire")

        self.history.find_all = broken
        report = await self.orch.sync_history()
        self.assertEqual(report.outcome, SyncOutcome.FAILED)
        self.assertIn("disk on fire", report.message)
        self.assertFalse(self.orch.is_syncing)

    async def test_config_reloaded_each_cycle(self):
        self.config = AccountConfig()
        self.assertEqual((await self.orch.sync_history()).outcome, SyncOutcome.NOT_CONFIGURED)
        self.config = ACCOUNT
        self.assertEqual((await self.orch.sync_history()).outcome, SyncOutcome.SUCCESS)


class TestSettingsAndBackup(OrchestratorTestCase):
    async def test_settings_upload_excludes_sync_and_device_keys(self):
        self.prefs.values.update({"webdav_url": "https://mine", "device_uuid": "x", "theme": "light"})
        report = await self.orch.sync_settings()
        self.assertTrue(report.success)
        uploaded = json.loads(self.remote.files["/dav/xmbox_settings.json"])
        self.assertEqual(uploaded, {"theme": "light"})

    async def test_settings_remote_overwrites_non_excluded_keys(self):
        self.config = code_config()
        self.prefs.values.update({"webdav_url": "https://mine", "device_name": "tv", "theme": "light"})
        self.remote.files[READ_SETTINGS] = json.dumps(
            {"theme": "dark", "volume": 3, "webdav_url": "https://theirs", "device_name": "phone"}
        ).encode()

        with mock.patch.object(self.prefs, "save", wraps=self.prefs.save) as save:
            report = await self.orch.sync_settings()

        self.assertEqual(report.outcome, SyncOutcome.UPLOAD_FAILED)
        self.assertEqual(report.updated, 2)
        self.assertEqual(save.call_count, 1)
        self.assertEqual(self.prefs.get("theme"), "dark")
        self.assertEqual(self.prefs.get("volume"), 3)
        self.assertEqual(self.prefs.get("webdav_url"), "https://mine")
        self.assertEqual(self.prefs.get("device_name"), "tv")

    async def test_sync_all_runs_both(self):
        self.seed_local(("A", 1, 1))
        report = await self.orch.sync_all()
        self.assertEqual(report.kind, "all")
        self.assertTrue(report.success)
        self.assertIn(DAV_HISTORY, self.remote.files)
        self.assertIn("/dav/xmbox_settings.json", self.remote.files)

    async def test_backup_round_trip(self):
        self.assertIsNone(await self.orch.download_backup())
        report = await self.orch.upload_backup({"config": [1, 2]})
        self.assertTrue(report.success)
        self.assertEqual(await self.orch.download_backup(), {"config": [1, 2]})

    async def test_backup_upload_not_authorized(self):
        self.config = code_config()
        report = await self.orch.upload_backup({"config": []})
        self.assertFalse(report.success)
        self.assertIn("write token", report.message)

    async def test_connection_not_configured(self):
        self.config = CodeConfig(public_base_url="https://pub.example.com/raw")
        result = await self.orch.test_connection()
        self.assertFalse(result.success)
        self.assertIn("sync code", result.message)


class TestStoredConfig(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_stored_config_is_not_configured(self):
        prefs = SettingsStore("unused-settings.json", persist=False)
        prefs.values.update({
            "webdav_sync_mode": "CODE",
            "webdav_sync_code": 12345678,
            "webdav_public_url": "https://pub.example.com/raw",
        })
        remote = FakeRemote()
        orch = SyncOrchestrator(HistoryStore("unused-history.json", persist=False), prefs,
                                remote.client(), TaskDispatcher())

        self.assertFalse(orch.is_configured())
        report = await orch.sync_history()
        self.assertEqual(report.outcome, SyncOutcome.NOT_CONFIGURED)
        self.assertFalse((await orch.test_connection()).success)
        self.assertEqual(remote.requests, [])

        prefs.values["webdav_sync_code"] = "12345678"
        orch.reload_config()
        self.assertTrue(orch.is_configured())


class TestParseHistory(unittest.TestCase):
    def test_skips_invalid_entries(self):
        records = parse_history(b'[{"key": "A", "createTime": 1, "position": 2}, null, {"createTime": 3}, {"key": ""}]')
        self.assertEqual(list(records), ["A"])

    def test_empty_body_is_empty_set(self):
        self.assertEqual(parse_history(b"  "), {})

    def test_non_array_is_malformed(self):
        with self.assertRaises(MalformedPayload):
            parse_history(b'{"key": "A"}')
        with self.assertRaises(MalformedPayload):
            parse_history(b"\xff\xfe")


if __name__ == '__main__':
    unittest.main()
