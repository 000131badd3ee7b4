import logging
import time
from typing import Optional, Tuple
import httpx
from .models import MirrorDecision

logger = logging.getLogger(__name__)

PROBE_FILE = "README.md"
CHECK_INTERVAL_SECONDS = 24 * 60 * 60


class MirrorSelector:
    """
    Chooses between two read endpoints serving the same release files.
    The decision is measured, then trusted for a day. Concurrent misses may
    both probe; the last result wins.
    """

    def __init__(
        self,
        primary_url: str,
        alternate_url: str,
        probe_timeout: float = 5.0,
        cache_seconds: float = CHECK_INTERVAL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.primary_url = primary_url.rstrip("/")
        self.alternate_url = alternate_url.rstrip("/")
        self.probe_timeout = probe_timeout
        self.cache_seconds = cache_seconds
        self.transport = transport
        self.decision: Optional[MirrorDecision] = None

    def _is_fresh(self) -> bool:
        return self.decision is not None and (time.monotonic() - self.decision.checked_at) < self.cache_seconds

    async def should_use_alternate(self) -> bool:
        if self._is_fresh():
            return self.decision.use_alternate

        use_alternate = await self._measure()
        self.decision = MirrorDecision(use_alternate=use_alternate, checked_at=time.monotonic())
        return use_alternate

    async def base_url(self) -> str:
        return self.alternate_url if await self.should_use_alternate() else self.primary_url

    async def _measure(self) -> bool:
        async with httpx.AsyncClient(timeout=self.probe_timeout, transport=self.transport) as client:
            primary_ok, primary_time = await self._probe(client, f"{self.primary_url}/{PROBE_FILE}")
            logger.debug(f"Primary mirror probe: success={primary_ok}, {primary_time * 1000:.0f}ms")
            alternate_ok, alternate_time = await self._probe(client, f"{self.alternate_url}/{PROBE_FILE}")
            logger.debug(f"Alternate mirror probe: success={alternate_ok}, {alternate_time * 1000:.0f}ms")

        if primary_ok and alternate_ok:
            use_alternate = alternate_time < primary_time
            logger.info(f"Both mirrors work, choosing {'alternate' if use_alternate else 'primary'}")
            return use_alternate
        if primary_ok:
            logger.info("Only the primary mirror works, using it")
            return False
        if alternate_ok:
            logger.info("Only the alternate mirror works, using it")
            return True

        logger.error("Both mirrors failed, defaulting to primary")
        return False

    @staticmethod
    async def _probe(client: httpx.AsyncClient, url: str) -> Tuple[bool, float]:
        start = time.monotonic()
        try:
            resp = await client.get(url)
            ok = resp.is_success
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Mirror probe {url} failed: {e}")
            ok = False
        return ok, time.monotonic() - start
