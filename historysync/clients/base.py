import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Union
import httpx
from ..errors import ConfigurationError, TransportError
from ..models import AccountConfig, CodeConfig, TestResult

logger = logging.getLogger(__name__)

HISTORY_FILE = "xmbox_history.json"
SETTINGS_FILE = "xmbox_settings.json"
BACKUP_FILE = "xmbox_backup.json"

# (substrings, user-facing message); checked in order, case-insensitive
CONNECTION_FAILURES = [
    (("401", "unauthorized"), "Authentication failed: check the username and password (some providers require an app password)."),
    (("403", "forbidden"), "Access denied: the account may not have WebDAV permission."),
    (("404", "not found"), "URL not found: check the server address."),
    (("ssl", "certificate"), "SSL certificate error: check that the server certificate is valid."),
    (("timeout", "timed out"), "Connection timed out: check the network connection or server address."),
    (("unknownhost", "unreachable", "name or service not known", "nodename nor servname", "getaddrinfo"),
     "Cannot reach the server: check the network connection and server address."),
]


def ensure_trailing_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"


def join_url(base: str, *segments: str) -> str:
    url = ensure_trailing_slash(base)
    parts = [s.strip("/") for s in segments if s and s.strip("/")]
    return url + "/".join(parts)


def classify_connection_error(message: Optional[str]) -> str:
    """Map raw error text to an advisory message. Never used to decide retries."""
    if message:
        lowered = message.lower()
        for needles, friendly in CONNECTION_FAILURES:
            if any(n in lowered for n in needles):
                return friendly
    return f"Connection failed: {message or 'unknown error'}"


def raise_for_status(resp: httpx.Response, action: str):
    if resp.is_success:
        return
    raise TransportError(
        f"{action} failed: HTTP {resp.status_code} {resp.reason_phrase}",
        status_code=resp.status_code,
    )


def transport_error(action: str, exc: Exception) -> TransportError:
    return TransportError(f"{action} failed: {type(exc).__name__}: {exc}")


class RemoteBackend(ABC):
    """
    File-level view of a remote store. Paths are relative to the backend's container.
    Failures surface as TransportError; exists() returns False only on an explicit not-found.
    """

    verify_after_put = False

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @property
    @abstractmethod
    def container_url(self) -> str:
        ...

    def file_url(self, path: str) -> str:
        return join_url(self.container_url, path)

    async def _send(self, action: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise transport_error(action, e) from e

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def get(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def put(self, path: str, data: bytes):
        ...

    @abstractmethod
    async def ensure_container(self, path: str = ""):
        ...

    @abstractmethod
    async def list(self, path: str = "") -> List[str]:
        ...

    async def test_connection(self) -> TestResult:
        url = self.container_url
        logger.debug(f"Testing connection to {url}")
        try:
            await self.list()
        except Exception as e:
            logger.error(f"Connection test failed ({type(e).__name__}): {e}")
            return TestResult(success=False, message=classify_connection_error(str(e)))
        logger.info(f"Connection test to {url} succeeded")
        return TestResult(success=True, message="Connected.")


def build_backend(config: Union[AccountConfig, CodeConfig], client: httpx.AsyncClient, dav=None) -> RemoteBackend:
    """Select the backend variant once, at configuration-load time. `dav` overrides the WebDAV client."""
    if not config.is_complete():
        raise ConfigurationError(f"Sync configuration incomplete for {config.mode.value} mode")

    if isinstance(config, CodeConfig):
        from .code_client import PublicCodeBackend
        return PublicCodeBackend(config, client)

    from .webdav_client import AccountBackend
    return AccountBackend(config, client, dav=dav)
