import asyncio
import io
import logging
from typing import Any, Callable, List, Optional
import httpx
from webdav4.client import Client, ClientError, HTTPError, ResourceNotFound
from ..errors import TransportError
from ..models import AccountConfig
from .base import RemoteBackend, ensure_trailing_slash, transport_error

logger = logging.getLogger(__name__)


def dav_error(action: str, exc: HTTPError) -> TransportError:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        return transport_error(action, exc)
    return TransportError(f"{action} failed: HTTP {status} {response.reason_phrase}", status_code=status)


class AccountBackend(RemoteBackend):
    """
    Generic WebDAV server with basic-auth credentials, spoken through webdav4.
    webdav4 is blocking, so every call runs in a worker thread.
    """

    verify_after_put = True

    def __init__(self, config: AccountConfig, client: httpx.AsyncClient, dav: Optional[Client] = None):
        super().__init__(client)
        self.base_url = ensure_trailing_slash(config.url)
        self.dav = dav or Client(
            self.base_url,
            auth=(config.username, config.password),
            timeout=client.timeout,
        )

    @property
    def container_url(self) -> str:
        return self.base_url

    async def _call(self, action: str, path: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        action = f"{action} {self.file_url(path) if path else self.base_url}"
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ResourceNotFound as e:
            raise TransportError(f"{action} failed: HTTP 404 Not Found", status_code=404) from e
        except HTTPError as e:
            raise dav_error(action, e) from e
        except (ClientError, httpx.HTTPError) as e:
            raise transport_error(action, e) from e

    async def exists(self, path: str) -> bool:
        try:
            return bool(await self._call("WebDAV exists", path, self.dav.exists, path))
        except TransportError as e:
            if e.status_code == 404:
                return False
            raise

    async def get(self, path: str) -> bytes:
        buffer = io.BytesIO()
        await self._call("WebDAV get", path, self.dav.download_fileobj, path, buffer)
        return buffer.getvalue()

    async def put(self, path: str, data: bytes):
        logger.debug(f"PUT {self.file_url(path)} ({len(data)} bytes)")
        await self._call("WebDAV put", path, self.dav.upload_fileobj, io.BytesIO(data), path, overwrite=True)

    async def ensure_container(self, path: str = ""):
        if await self.exists(path):
            return
        await self._call("WebDAV mkcol", path, self.dav.mkdir, path)
        logger.info(f"Created WebDAV directory {self.file_url(path) if path else self.base_url}")

    async def list(self, path: str = "") -> List[str]:
        entries = await self._call("WebDAV list", path, self.dav.ls, path, detail=False)
        return [str(entry) for entry in entries]
