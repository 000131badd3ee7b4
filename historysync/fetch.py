import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union
import httpx
from .dispatch import TaskDispatcher
from .errors import IntegrityError, TransportError
from .models import DownloadJob, FetchResult

logger = logging.getLogger(__name__)

MAX_RETRY_COUNT = 3
RETRY_DELAY_SECONDS = 0.5
CHUNK_SIZE = 4096
INDETERMINATE = -1
PACKAGE_MAGIC = b"PK\x03\x04"  # ZIP local file header; release packages are ZIP archives


class DownloadCallback(Protocol):
    def progress(self, percent: int) -> None: ...

    def error(self, message: str) -> None: ...

    def success(self, path: Path) -> None: ...


def declared_length(resp: httpx.Response) -> int:
    """Content-Length of the decoded body, or -1 when unknown."""
    encoding = resp.headers.get("content-encoding", "identity").lower()
    raw = resp.headers.get("content-length")
    if not raw or encoding not in ("", "identity"):
        return -1
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Unparseable Content-Length: {raw}")
        return -1
    return value if value >= 0 else -1


def verify_file(path: Path, expected_length: int, package: bool):
    if not path.exists() or path.stat().st_size == 0:
        raise IntegrityError(f"Downloaded file {path.name} is missing or empty")

    size = path.stat().st_size
    if expected_length > 0 and size != expected_length:
        raise IntegrityError(f"File size mismatch: expected {expected_length}, got {size}")

    if package:
        with open(path, "rb") as f:
            header = f.read(len(PACKAGE_MAGIC))
        if header != PACKAGE_MAGIC:
            raise IntegrityError(f"Invalid package header: {header.hex(' ').upper() or 'empty'}")
        logger.debug(f"Package verification passed: {path.name} ({size} bytes)")


class Download:
    """
    Fetch one payload to disk: primary URL first, then a distinct fallback,
    each with bounded retries and linear backoff. Partial files never survive a failure.
    """

    def __init__(
        self,
        job: DownloadJob,
        callback: Optional[DownloadCallback] = None,
        dispatcher: Optional[TaskDispatcher] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = MAX_RETRY_COUNT,
        retry_delay: float = RETRY_DELAY_SECONDS,
        timeout: float = 30.0,
    ):
        self.job = job
        self.callback = callback
        self.dispatcher = dispatcher
        self.client = client
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None
        self._last_percent: Optional[int] = None

    @classmethod
    def create(
        cls,
        url: str,
        destination: Union[str, Path],
        fallback_url: Optional[str] = None,
        callback: Optional[DownloadCallback] = None,
        **kwargs,
    ) -> "Download":
        job = DownloadJob(primary_url=url, fallback_url=fallback_url, destination=Path(destination))
        return cls(job, callback=callback, **kwargs)

    @property
    def destination(self) -> Path:
        return self.job.destination

    def start(self) -> asyncio.Task:
        """Run in the background; the outcome arrives through the callback."""
        if self.dispatcher is not None:
            self.task = self.dispatcher.run_async(self.run(), name=f"download-{self.destination.name}")
        else:
            self.task = asyncio.ensure_future(self.run())
        return self.task

    def cancel(self):
        """Best-effort abort. Nothing is reported after this returns."""
        self.cancelled = True
        self.callback = None
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self._discard()

    async def run(self) -> FetchResult:
        if not self.job.primary_url:
            return self._finish(FetchResult(success=False, message="Download URL is empty"))
        if not str(self.destination) or str(self.destination) == ".":
            return self._finish(FetchResult(success=False, message="Destination path is empty"))
        if self.job.primary_url.startswith("file:"):
            logger.debug(f"Skipping local URL {self.job.primary_url}")
            return FetchResult(success=False, message="Local file URLs are not downloaded")

        client = self.client or httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        try:
            result = await self._with_fallback(client)
        finally:
            if self.client is None:
                await client.aclose()
        return self._finish(result)

    async def _with_fallback(self, client: httpx.AsyncClient) -> FetchResult:
        ok, error, attempts = await self._try_url(client, self.job.primary_url, "primary")
        if ok:
            return FetchResult(success=True, path=self.destination, source_url=self.job.primary_url, attempts=attempts)

        fallback = self.job.fallback_url
        if fallback and fallback != self.job.primary_url:
            logger.info(f"Primary URL failed, falling back to {fallback}")
            ok, error, more = await self._try_url(client, fallback, "fallback")
            attempts += more
            if ok:
                return FetchResult(success=True, path=self.destination, source_url=fallback, attempts=attempts)

        return FetchResult(success=False, message=error or "Download failed", attempts=attempts)

    async def _try_url(self, client: httpx.AsyncClient, url: str, source: str) -> Tuple[bool, Optional[str], int]:
        last_error: Optional[str] = None
        for attempt in range(1, self.max_retries + 1):
            self._notify("progress", 0)
            try:
                await self._attempt(client, url)
                logger.info(f"Download succeeded ({source}, attempt {attempt}/{self.max_retries})")
                return True, None, attempt
            except (httpx.HTTPError, httpx.InvalidURL, TransportError, IntegrityError, OSError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Download failed ({source}, attempt {attempt}/{self.max_retries}): {last_error}")

            if attempt < self.max_retries:
                delay = self.retry_delay * attempt
                logger.debug(f"Retrying in {delay:.1f}s")
                # a cancelled sleep ends the whole download
                await asyncio.sleep(delay)
        return False, last_error, self.max_retries

    async def _attempt(self, client: httpx.AsyncClient, url: str):
        try:
            async with client.stream("GET", url) as resp:
                if not resp.is_success:
                    raise TransportError(f"HTTP {resp.status_code} {resp.reason_phrase}", status_code=resp.status_code)

                length = self.job.expected_length or declared_length(resp)
                self.destination.parent.mkdir(parents=True, exist_ok=True)
                self._last_percent = None
                total = 0
                with open(self.destination, "wb") as f:
                    async for chunk in resp.aiter_bytes(CHUNK_SIZE):
                        f.write(chunk)
                        total += len(chunk)
                        if length > 0:
                            self._progress(min(int(total * 100 / length), 100))
                        else:
                            self._progress(INDETERMINATE)

                if length <= 0:
                    self._progress(100)

            # an unknown-length, non-package body may legitimately be empty
            if length > 0 or self.job.verify_package:
                verify_file(self.destination, length, self.job.verify_package)
        except BaseException:
            self._discard()
            raise

    def _progress(self, percent: int):
        if percent == self._last_percent:
            return
        self._last_percent = percent
        self._notify("progress", percent)

    def _discard(self):
        try:
            self.destination.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete partial download {self.destination}: {e}")

    def _finish(self, result: FetchResult) -> FetchResult:
        if result.success:
            self._notify("success", result.path)
        else:
            logger.error(f"Download of {self.destination.name} failed: {result.message}")
            self._notify("error", result.message)
        return result

    def _notify(self, name: str, *args):
        if self.cancelled or self.callback is None:
            return
        if self.dispatcher is not None:
            self.dispatcher.post_to_owner(self._deliver, name, args)
        else:
            self._deliver(name, args)

    def _deliver(self, name: str, args: tuple):
        # re-checked at delivery time: a cancel may land between post and run
        if self.cancelled or self.callback is None:
            return
        getattr(self.callback, name)(*args)
