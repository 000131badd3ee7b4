import logging
from pathlib import Path
from typing import Optional
import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from .dispatch import TaskDispatcher
from .fetch import MAX_RETRY_COUNT, RETRY_DELAY_SECONDS, Download, DownloadCallback
from .mirror import MirrorSelector
from .models import DownloadJob

logger = logging.getLogger(__name__)

RAW_HOST = "raw.githubusercontent.com/"
CDN_BASE = "https://cdn.jsdelivr.net/gh/"
DEFAULT_REPO = "Tosencen/XMBOX"


class ReleaseInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    code: int = 0
    desc: str = ""
    size: Optional[int] = None


def raw_to_cdn_url(raw_url: str) -> str:
    """
    https://raw.githubusercontent.com/{owner}/{repo}/{branch}/{path}
    -> https://cdn.jsdelivr.net/gh/{owner}/{repo}@{branch}/{path}
    Anything else comes back unchanged.
    """
    if RAW_HOST not in raw_url:
        return raw_url
    path = raw_url.split(RAW_HOST, 1)[1]
    parts = path.split("/", 3)
    if len(parts) < 4:
        return raw_url
    owner, repo, branch, file_path = parts
    cdn_url = f"{CDN_BASE}{owner}/{repo}@{branch}/{file_path}"
    logger.debug(f"Raw URL {raw_url} -> {cdn_url}")
    return cdn_url


def release_to_cdn_url(github_url: str, tag: str, file_name: str, default_repo: str = DEFAULT_REPO) -> str:
    """
    https://github.com/{owner}/{repo}/releases/download/{tag}/{file}
    -> https://cdn.jsdelivr.net/gh/{owner}/{repo}@{tag}/{file}
    """
    marker = "/releases/download/"
    if marker in github_url:
        base = github_url.split(marker, 1)[0].rstrip("/").split("/")
        if len(base) >= 2 and base[-2] and base[-1]:
            return f"{CDN_BASE}{base[-2]}/{base[-1]}@{tag}/{file_name}"
    return f"{CDN_BASE}{default_repo}@{tag}/{file_name}"


class UpdateChecker:
    """Release manifest lookup and package download over the faster mirror."""

    def __init__(
        self,
        mirror: MirrorSelector,
        client: httpx.AsyncClient,
        download_dir: str,
        dispatcher: Optional[TaskDispatcher] = None,
        dev: bool = False,
        name: str = "mobile-arm64_v8a",
        max_retries: int = MAX_RETRY_COUNT,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ):
        self.mirror = mirror
        self.client = client
        self.download_dir = Path(download_dir)
        self.dispatcher = dispatcher
        self.channel = "dev" if dev else "release"
        self.name = name
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def manifest_url(self) -> str:
        return f"{await self.mirror.base_url()}/apk/{self.channel}/{self.name}.json"

    async def package_url(self) -> str:
        return f"{await self.mirror.base_url()}/apk/{self.channel}/{self.name}.apk"

    async def fetch_manifest(self) -> Optional[ReleaseInfo]:
        url = await self.manifest_url()
        try:
            resp = await self.client.get(url)
            resp.raise_for_status()
            return ReleaseInfo.model_validate(resp.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, ValidationError) as e:
            logger.error(f"Failed to fetch release manifest {url}: {e}")
            return None

    async def package_download(self, release: Optional[ReleaseInfo] = None,
                               callback: Optional[DownloadCallback] = None) -> Download:
        """CDN first, then the mirror URL itself. The caller runs or starts the returned Download."""
        url = await self.package_url()
        job = DownloadJob(
            primary_url=raw_to_cdn_url(url),
            fallback_url=url,
            destination=self.download_dir / f"{self.name}.apk",
            expected_length=release.size if release and release.size else None,
            verify_package=True,
        )
        return Download(
            job, callback=callback, dispatcher=self.dispatcher, client=self.client,
            max_retries=self.max_retries, retry_delay=self.retry_delay,
        )
