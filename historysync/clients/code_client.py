import logging
from typing import List, Optional
import httpx
from ..errors import NotAuthorized
from ..models import CodeConfig
from .base import BACKUP_FILE, HISTORY_FILE, SETTINGS_FILE, RemoteBackend, join_url, raise_for_status

logger = logging.getLogger(__name__)

KNOWN_FILES = (HISTORY_FILE, SETTINGS_FILE, BACKUP_FILE)


class PublicCodeBackend(RemoteBackend):
    """
    Files live under {public_base_url}/{sync_code}/ on a public read endpoint.
    Anyone holding the code can read; writing needs a token for the write endpoint.
    """

    def __init__(self, config: CodeConfig, client: httpx.AsyncClient):
        super().__init__(client)
        self.sync_code = config.sync_code
        self.read_base = join_url(config.public_base_url, config.sync_code) + "/"
        self.write_base = join_url(config.write_base_url or config.public_base_url, config.sync_code) + "/"
        self.write_token: Optional[str] = config.write_token or None

    @property
    def container_url(self) -> str:
        return self.read_base

    async def exists(self, path: str) -> bool:
        url = self.file_url(path)
        resp = await self._send("Sync code exists", "HEAD", url)
        if resp.status_code == 404:
            return False
        raise_for_status(resp, f"Sync code exists {url}")
        return True

    async def get(self, path: str) -> bytes:
        url = self.file_url(path)
        resp = await self._send("Sync code get", "GET", url)
        raise_for_status(resp, f"Sync code get {url}")
        return resp.content

    async def put(self, path: str, data: bytes):
        if not self.write_token:
            raise NotAuthorized("Sync code mode needs a write token to upload; downloads work without one")

        url = join_url(self.write_base, path)
        logger.debug(f"PUT {url} ({len(data)} bytes)")
        resp = await self._send(
            "Sync code put", "PUT", url,
            content=data,
            headers={
                "Authorization": f"Bearer {self.write_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
        )
        if resp.status_code in (401, 403):
            raise NotAuthorized(f"Write token rejected: HTTP {resp.status_code} {resp.reason_phrase}")
        raise_for_status(resp, f"Sync code put {url}")

    async def ensure_container(self, path: str = ""):
        # Public endpoints create the code's directory implicitly on first write
        logger.debug(f"No container to create for sync code {self.sync_code}")

    async def list(self, path: str = "") -> List[str]:
        return [name for name in KNOWN_FILES if await self.exists(join_url(path, name) if path else name)]
