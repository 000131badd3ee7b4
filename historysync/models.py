from enum import Enum, IntEnum
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

# Player sentinel for "position unknown"; any negative position is treated the same.
TIME_UNSET = -9223372036854775807


class HistoryRecord(BaseModel):
    """One watch-history entry. Unknown wire fields are carried through untouched."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: str
    create_time: int = Field(0, alias="createTime")  # epoch ms, last touched
    position: int = TIME_UNSET

    @property
    def has_position(self) -> bool:
        return self.position >= 0

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


RecordSet = Dict[str, HistoryRecord]


class MergeDecision(BaseModel):
    to_insert: List[HistoryRecord] = Field(default_factory=list)
    to_update: List[HistoryRecord] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_insert and not self.to_update


class SyncMode(str, Enum):
    ACCOUNT = "ACCOUNT"
    CODE = "CODE"


class SyncInterval(IntEnum):
    """User-selectable auto-sync cadence in minutes."""
    MIN_15 = 15
    MIN_30 = 30
    MIN_60 = 60
    MIN_120 = 120
    MIN_240 = 240


class AccountConfig(BaseModel):
    mode: Literal[SyncMode.ACCOUNT] = SyncMode.ACCOUNT
    url: str = ""
    username: str = ""
    password: str = ""

    def is_complete(self) -> bool:
        return bool(self.url and self.username and self.password)


class CodeConfig(BaseModel):
    mode: Literal[SyncMode.CODE] = SyncMode.CODE
    sync_code: str = ""
    public_base_url: str = ""
    write_token: Optional[str] = None
    write_base_url: Optional[str] = None  # defaults to public_base_url

    def is_complete(self) -> bool:
        return bool(self.sync_code and self.public_base_url)


SyncConfig = Annotated[Union[AccountConfig, CodeConfig], Field(discriminator="mode")]


class TestResult(BaseModel):
    __test__ = False  # not a test class

    success: bool
    message: str


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    UPLOAD_FAILED = "upload_failed"      # download and merge worked, upload did not
    UPLOAD_ONLY = "upload_only"          # remote payload unusable, upload worked
    DOWNLOAD_FAILED = "download_failed"  # uploaded but download failed
    FAILED = "failed"
    NOT_CONFIGURED = "not_configured"
    ALREADY_RUNNING = "already_running"
    SCHEDULED = "scheduled"


class SyncReport(BaseModel):
    kind: str = "history"
    outcome: SyncOutcome
    success: bool = False
    message: str = ""
    uploaded: int = 0
    remote_count: int = 0
    inserted: int = 0
    updated: int = 0
    errors: List[str] = Field(default_factory=list)
    finished_at: float = 0.0


class DownloadJob(BaseModel):
    primary_url: str
    fallback_url: Optional[str] = None
    destination: Path
    expected_length: Optional[int] = None
    verify_package: bool = False


class FetchResult(BaseModel):
    success: bool
    path: Optional[Path] = None
    source_url: Optional[str] = None
    message: str = ""
    attempts: int = 0


class MirrorDecision(BaseModel):
    use_alternate: bool = False
    checked_at: float = 0.0  # monotonic seconds


class SyncState(BaseModel):
    auto_sync: bool = False
    interval_minutes: int = SyncInterval.MIN_30
    last_history_sync: float = 0.0
    last_settings_sync: float = 0.0
    last_successful_sync: float = 0.0
    sync_count: int = 0
    failure_count: int = 0
    last_report: Optional[SyncReport] = None
