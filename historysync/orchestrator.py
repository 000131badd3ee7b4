import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import httpx
from pydantic import ValidationError
from .clients.base import BACKUP_FILE, HISTORY_FILE, SETTINGS_FILE, RemoteBackend, build_backend
from .dispatch import TaskDispatcher
from .engine import index_records, merge_history
from .errors import ConfigurationError, MalformedPayload, NotAuthorized, TransportError
from .models import AccountConfig, CodeConfig, HistoryRecord, RecordSet, SyncOutcome, SyncReport, TestResult
from .preferences import load_sync_config, should_skip_setting
from .state import HistoryStore, SettingsStore

logger = logging.getLogger(__name__)

ReportCallback = Callable[[SyncReport], Any]
ConfigLoader = Callable[[], Union[AccountConfig, CodeConfig]]
BackendFactory = Callable[[Union[AccountConfig, CodeConfig], httpx.AsyncClient], RemoteBackend]


class DownloadState(str, Enum):
    OK = "ok"
    ABSENT = "absent"
    MALFORMED = "malformed"
    FAILED = "failed"


def _decode_json(data: bytes) -> Any:
    try:
        text = data.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise MalformedPayload(f"Remote file is not UTF-8: {e}") from e
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError as e:
        raise MalformedPayload(f"Remote file is not valid JSON: {e}") from e


def parse_history(data: bytes) -> RecordSet:
    """Decode a remote history file. Unreadable entries are skipped, an unreadable file raises MalformedPayload."""
    items = _decode_json(data)
    if items is None:
        return {}
    if not isinstance(items, list):
        raise MalformedPayload(f"Expected a JSON array of history records, got {type(items).__name__}")

    records: List[HistoryRecord] = []
    for item in items:
        try:
            records.append(HistoryRecord.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid remote history record: {e.error_count()} error(s)")
    return index_records(records)


def parse_settings(data: bytes) -> Dict[str, Any]:
    values = _decode_json(data)
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise MalformedPayload(f"Expected a JSON object of settings, got {type(values).__name__}")
    return values


def encode_json(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def build_report(kind: str, upload_ok: bool, download: DownloadState, errors: List[str], **counts) -> SyncReport:
    """Fold upload/download results into one outcome. Success means local state ended consistent with what we reached."""
    if download in (DownloadState.OK, DownloadState.ABSENT):
        outcome = SyncOutcome.SUCCESS if upload_ok else SyncOutcome.UPLOAD_FAILED
        success = True
    elif download == DownloadState.MALFORMED:
        outcome = SyncOutcome.UPLOAD_ONLY if upload_ok else SyncOutcome.FAILED
        success = upload_ok
    else:
        outcome = SyncOutcome.DOWNLOAD_FAILED if upload_ok else SyncOutcome.FAILED
        success = False

    messages = {
        SyncOutcome.SUCCESS: "Sync complete." if download == DownloadState.OK else "Uploaded; nothing to merge yet.",
        SyncOutcome.UPLOAD_FAILED: "Downloaded and merged, but upload failed.",
        SyncOutcome.UPLOAD_ONLY: "Uploaded, but the remote copy was unreadable and was not merged.",
        SyncOutcome.DOWNLOAD_FAILED: "Uploaded, but download failed.",
        SyncOutcome.FAILED: "Sync failed.",
    }
    message = messages[outcome]
    if errors:
        message = f"{message} {errors[-1]}"
    return SyncReport(kind=kind, outcome=outcome, success=success, message=message, errors=errors, **counts)


class SyncOrchestrator:
    """
    Runs upload-then-download-then-merge cycles against the configured backend.
    At most one cycle runs at a time; extra requests are rejected, not queued.
    """

    def __init__(
        self,
        history_store: HistoryStore,
        settings_store: SettingsStore,
        client: httpx.AsyncClient,
        dispatcher: TaskDispatcher,
        config_loader: Optional[ConfigLoader] = None,
        backend_factory: BackendFactory = build_backend,
    ):
        self.history_store = history_store
        self.settings_store = settings_store
        self.client = client
        self.dispatcher = dispatcher
        self.config_loader = config_loader or (lambda: load_sync_config(settings_store))
        self.backend_factory = backend_factory
        self.config: Optional[Union[AccountConfig, CodeConfig]] = None
        self.backend: Optional[RemoteBackend] = None
        self.current_task: Optional[asyncio.Task] = None
        self.last_report: Optional[SyncReport] = None
        self._syncing = False
        self.reload_config()

    # Configuration

    def reload_config(self):
        try:
            config = self.config_loader()
        except ValidationError as e:
            logger.error(f"Stored sync configuration is invalid, treating sync as unconfigured: {e.error_count()} error(s)")
            self.config = None
            self.backend = None
            return
        if config == self.config and self.backend is not None:
            return
        self.config = config
        try:
            self.backend = self.backend_factory(config, self.client)
            logger.info(f"Sync backend configured ({config.mode.value} mode)")
        except ConfigurationError as e:
            logger.debug(str(e))
            self.backend = None

    def is_configured(self) -> bool:
        return self.config is not None and self.config.is_complete() and self.backend is not None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def _not_configured_message(self) -> str:
        if isinstance(self.config, CodeConfig):
            return "Sync is not configured: set the sync code and public URL."
        return "Sync is not configured: set the WebDAV URL, username and password."

    async def test_connection(self) -> TestResult:
        self.reload_config()
        if not self.is_configured():
            return TestResult(success=False, message=self._not_configured_message())
        return await self.backend.test_connection()

    # Public sync operations

    async def sync_history(self, background: bool = False, callback: Optional[ReportCallback] = None) -> SyncReport:
        return await self._submit("history", self._history_cycle, background, callback)

    async def sync_settings(self, background: bool = False, callback: Optional[ReportCallback] = None) -> SyncReport:
        return await self._submit("settings", self._settings_cycle, background, callback)

    async def sync_all(self, background: bool = False, callback: Optional[ReportCallback] = None) -> SyncReport:
        return await self._submit("all", self._all_cycle, background, callback)

    async def _submit(
        self,
        kind: str,
        cycle: Callable[[RemoteBackend], Awaitable[SyncReport]],
        background: bool,
        callback: Optional[ReportCallback],
    ) -> SyncReport:
        self.reload_config()
        if not self.is_configured():
            report = SyncReport(kind=kind, outcome=SyncOutcome.NOT_CONFIGURED, message=self._not_configured_message())
            self._deliver(callback, report)
            return report

        # check-and-set with no await in between
        if self._syncing:
            logger.warning("Sync already in progress, skipping request")
            report = SyncReport(kind=kind, outcome=SyncOutcome.ALREADY_RUNNING, message="Sync already in progress.")
            self._deliver(callback, report)
            return report
        self._syncing = True

        backend = self.backend
        if background:
            try:
                self.current_task = self.dispatcher.run_async(
                    self._guarded(kind, cycle, backend, callback), name=f"sync-{kind}"
                )
            except BaseException:
                self._syncing = False
                raise
            return SyncReport(kind=kind, outcome=SyncOutcome.SCHEDULED, success=True, message="Sync started.")
        return await self._guarded(kind, cycle, backend, callback)

    async def _guarded(
        self,
        kind: str,
        cycle: Callable[[RemoteBackend], Awaitable[SyncReport]],
        backend: RemoteBackend,
        callback: Optional[ReportCallback],
    ) -> SyncReport:
        report: Optional[SyncReport] = None
        try:
            report = await cycle(backend)
        except asyncio.CancelledError:
            report = SyncReport(kind=kind, outcome=SyncOutcome.FAILED, message="Sync cancelled.")
            raise
        except Exception as e:
            logger.error(f"Unexpected error during {kind} sync: {e}", exc_info=True)
            report = SyncReport(kind=kind, outcome=SyncOutcome.FAILED, message=f"Sync failed: {e}", errors=[str(e)])
        finally:
            self._syncing = False
            self.current_task = None
            if report is not None:
                report.finished_at = time.time()
                self.last_report = report
                self._deliver(callback, report)
        return report

    def _deliver(self, callback: Optional[ReportCallback], report: SyncReport):
        if callback is not None:
            self.dispatcher.post_to_owner(callback, report)

    # Shared steps

    async def _ensure_container(self, backend: RemoteBackend):
        # Non-fatal: several servers create the directory on PUT
        try:
            await backend.ensure_container()
        except Exception as e:
            logger.warning(f"Could not create remote directory, uploading anyway: {e}")

    async def _upload(self, backend: RemoteBackend, name: str, payload: bytes, errors: List[str]) -> bool:
        try:
            await self._ensure_container(backend)
            await backend.put(name, payload)
            if backend.verify_after_put and not await backend.exists(name):
                errors.append(f"{name} missing after upload")
                logger.error(f"Uploaded {name} but it does not exist on the remote")
                return False
        except NotAuthorized as e:
            errors.append(str(e))
            logger.error(f"Upload of {name} not authorized: {e}")
            return False
        except TransportError as e:
            errors.append(str(e))
            logger.error(f"Upload of {name} failed: {e}")
            return False
        logger.debug(f"Uploaded {name} ({len(payload)} bytes)")
        return True

    async def _fetch(self, backend: RemoteBackend, name: str, errors: List[str]) -> Tuple[DownloadState, Optional[bytes]]:
        """Absent and unreadable both mean the download is skipped; only a real failure is reported as one."""
        try:
            if not await backend.exists(name):
                logger.info(f"Remote {name} does not exist, nothing to merge")
                return DownloadState.ABSENT, None
            return DownloadState.OK, await backend.get(name)
        except TransportError as e:
            if e.status_code == 404:
                logger.info(f"Remote {name} disappeared before download, nothing to merge")
                return DownloadState.ABSENT, None
            errors.append(str(e))
            logger.error(f"Download of {name} failed: {e}")
            return DownloadState.FAILED, None

    # Cycles

    async def _history_cycle(self, backend: RemoteBackend) -> SyncReport:
        errors: List[str] = []

        records = self.history_store.find_all() or []
        logger.info(f"Uploading {len(records)} history records")
        upload_ok = await self._upload(backend, HISTORY_FILE, encode_json([r.to_wire() for r in records]), errors)

        state, data = await self._fetch(backend, HISTORY_FILE, errors)
        remote_count = inserted = updated = 0
        if state == DownloadState.OK:
            try:
                remote = parse_history(data)
            except MalformedPayload as e:
                logger.error(f"Remote history unusable: {e}")
                errors.append(str(e))
                state = DownloadState.MALFORMED
            else:
                local = index_records(self.history_store.find_all())
                decision = merge_history(local, remote)
                if decision.to_insert:
                    self.history_store.insert(decision.to_insert)
                    logger.info(f"Inserted {len(decision.to_insert)} history records")
                if decision.to_update:
                    self.history_store.update(decision.to_update)
                    logger.info(f"Updated {len(decision.to_update)} history records")
                remote_count, inserted, updated = len(remote), len(decision.to_insert), len(decision.to_update)
                logger.info(f"History merge done: {remote_count} remote, {len(local)} local")

        return build_report(
            "history", upload_ok, state, errors,
            uploaded=len(records) if upload_ok else 0,
            remote_count=remote_count, inserted=inserted, updated=updated,
        )

    async def _settings_cycle(self, backend: RemoteBackend) -> SyncReport:
        errors: List[str] = []

        local = {k: v for k, v in self.settings_store.get_all().items() if not should_skip_setting(k)}
        upload_ok = await self._upload(backend, SETTINGS_FILE, encode_json(local), errors)

        state, data = await self._fetch(backend, SETTINGS_FILE, errors)
        remote_count = updated = 0
        if state == DownloadState.OK:
            try:
                remote = parse_settings(data)
            except MalformedPayload as e:
                logger.error(f"Remote settings unusable: {e}")
                errors.append(str(e))
                state = DownloadState.MALFORMED
            else:
                # Remote wins for every syncable key, no timestamps involved
                applied = {k: v for k, v in remote.items() if not should_skip_setting(k)}
                self.settings_store.put_many(applied)
                updated = len(applied)
                remote_count = len(remote)
                logger.info(f"Applied {updated} of {remote_count} remote settings")

        return build_report(
            "settings", upload_ok, state, errors,
            uploaded=len(local) if upload_ok else 0,
            remote_count=remote_count, updated=updated,
        )

    async def _all_cycle(self, backend: RemoteBackend) -> SyncReport:
        history = await self._history_cycle(backend)
        settings = await self._settings_cycle(backend)
        outcome = history.outcome if history.outcome != SyncOutcome.SUCCESS else settings.outcome
        return SyncReport(
            kind="all",
            outcome=outcome,
            success=history.success and settings.success,
            message=f"History: {history.message} Settings: {settings.message}",
            uploaded=history.uploaded,
            remote_count=history.remote_count,
            inserted=history.inserted,
            updated=history.updated,
            errors=history.errors + settings.errors,
        )

    # Backup blob

    async def upload_backup(self, blob: Dict[str, Any]) -> SyncReport:
        self.reload_config()
        if not self.is_configured():
            return SyncReport(kind="backup", outcome=SyncOutcome.NOT_CONFIGURED, message=self._not_configured_message())

        errors: List[str] = []
        ok = await self._upload(self.backend, BACKUP_FILE, encode_json(blob), errors)
        if ok:
            logger.info("Full backup uploaded")
            return SyncReport(kind="backup", outcome=SyncOutcome.SUCCESS, success=True, message="Backup uploaded.")
        return SyncReport(
            kind="backup", outcome=SyncOutcome.FAILED,
            message=f"Backup upload failed. {errors[-1]}", errors=errors,
        )

    async def download_backup(self) -> Optional[Dict[str, Any]]:
        """Returns the remote backup object, or None when absent, unreachable or unreadable."""
        self.reload_config()
        if not self.is_configured():
            logger.error("Sync not configured, cannot download backup")
            return None

        state, data = await self._fetch(self.backend, BACKUP_FILE, [])
        if state != DownloadState.OK:
            return None
        try:
            blob = _decode_json(data)
        except MalformedPayload as e:
            logger.error(f"Remote backup unusable: {e}")
            return None
        if not isinstance(blob, dict) or not blob:
            logger.warning("Remote backup is empty")
            return None
        logger.info("Full backup downloaded")
        return blob
