import logging
import random
from typing import Union
from .models import AccountConfig, CodeConfig, SyncInterval, SyncMode
from .state import SettingsStore

logger = logging.getLogger(__name__)

# Keys owned by the sync backend itself; never synced, or a remote copy would overwrite this device's setup.
SYNC_KEY_PREFIX = "webdav_"
KEY_MODE = "webdav_sync_mode"
KEY_URL = "webdav_url"
KEY_USERNAME = "webdav_username"
KEY_PASSWORD = "webdav_password"
KEY_SYNC_CODE = "webdav_sync_code"
KEY_PUBLIC_URL = "webdav_public_url"
KEY_WRITE_TOKEN = "webdav_write_token"
KEY_WRITE_URL = "webdav_write_url"
KEY_AUTO_SYNC = "webdav_auto_sync"
KEY_INTERVAL = "webdav_sync_interval"

DEVICE_KEYS = frozenset({"device_uuid", "device_name"})

SYNC_CODE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
SYNC_CODE_LENGTH = 8


def should_skip_setting(key: str) -> bool:
    return key.startswith(SYNC_KEY_PREFIX) or key in DEVICE_KEYS


def generate_sync_code() -> str:
    return "".join(random.choice(SYNC_CODE_CHARS) for _ in range(SYNC_CODE_LENGTH))


def load_sync_config(store: SettingsStore) -> Union[AccountConfig, CodeConfig]:
    mode = str(store.get(KEY_MODE) or SyncMode.ACCOUNT.value).upper()
    if mode == SyncMode.CODE.value:
        return CodeConfig(
            sync_code=store.get(KEY_SYNC_CODE) or "",
            public_base_url=store.get(KEY_PUBLIC_URL) or "",
            write_token=store.get(KEY_WRITE_TOKEN) or None,
            write_base_url=store.get(KEY_WRITE_URL) or None,
        )
    return AccountConfig(
        url=store.get(KEY_URL) or "",
        username=store.get(KEY_USERNAME) or "",
        password=store.get(KEY_PASSWORD) or "",
    )


def save_sync_config(store: SettingsStore, config: Union[AccountConfig, CodeConfig]):
    """Persist a user's save action. Only the active variant's fields are written."""
    store.put(KEY_MODE, config.mode.value)
    if isinstance(config, CodeConfig):
        store.put(KEY_SYNC_CODE, config.sync_code)
        store.put(KEY_PUBLIC_URL, config.public_base_url)
        store.put(KEY_WRITE_TOKEN, config.write_token or "")
        store.put(KEY_WRITE_URL, config.write_base_url or "")
    else:
        store.put(KEY_URL, config.url)
        store.put(KEY_USERNAME, config.username)
        store.put(KEY_PASSWORD, config.password)
    logger.info(f"Saved sync configuration ({config.mode.value} mode)")


def load_auto_sync(store: SettingsStore) -> bool:
    return bool(store.get(KEY_AUTO_SYNC, False))


def load_interval(store: SettingsStore) -> SyncInterval:
    raw = store.get(KEY_INTERVAL, SyncInterval.MIN_30.value)
    try:
        return SyncInterval(int(raw))
    except (TypeError, ValueError):
        logger.warning(f"Unsupported sync interval {raw!r}, using {SyncInterval.MIN_30.value} minutes")
        return SyncInterval.MIN_30


def save_schedule(store: SettingsStore, auto_sync: bool, interval: SyncInterval):
    store.put(KEY_AUTO_SYNC, auto_sync)
    store.put(KEY_INTERVAL, int(interval))
