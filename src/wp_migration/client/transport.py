"""Blocking media transport: download a remote file to a temporary path."""

import tempfile
import time
from pathlib import Path

import httpx

from wp_migration.client.exceptions import ResourceMissing
from wp_migration.client.source_client import CancellationToken
from wp_migration.utils.logging import get_logger
from wp_migration.utils.retry import retry_on_network_error

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


class Downloader:
    """Downloads binary resources with bounded connect and transfer timeouts.

    The transfer timeout bounds the whole body, not each read, so a server
    trickling bytes cannot hold a download open indefinitely.
    """

    def __init__(
        self,
        connect_timeout: float = 5.0,
        transfer_timeout: float = 30.0,
        max_attempts: int = 2,
        transport: httpx.BaseTransport | None = None,
        cancel: CancellationToken | None = None,
    ):
        """Initialize downloader.

        Args:
            connect_timeout: Seconds allowed to establish the connection
            transfer_timeout: Seconds allowed for the whole transfer, and for each read
            max_attempts: Attempts per download for transient errors
            transport: Optional httpx transport (used by tests)
            cancel: Optional cancellation token checked before each download
        """
        self.max_attempts = max_attempts
        self.transfer_timeout = transfer_timeout
        self.cancel = cancel
        self.client = httpx.Client(
            timeout=httpx.Timeout(transfer_timeout, connect=connect_timeout),
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": "wp-bridge"},
        )

    def download_to_temp(self, url: str) -> Path:
        """Download ``url`` into a temporary file and return its path.

        Raises:
            ResourceMissing: If the resource cannot be fetched
            RunCancelled: If the cancellation token fired
        """
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

        fetch = retry_on_network_error(max_attempts=self.max_attempts)(self._fetch)
        try:
            return fetch(url)
        except httpx.HTTPStatusError as e:
            logger.warning("download_failed", url=url, status_code=e.response.status_code)
            raise ResourceMissing(
                f"Download failed with HTTP {e.response.status_code}", reference=url
            ) from e
        except httpx.HTTPError as e:
            logger.warning("download_failed", url=url, error=str(e))
            raise ResourceMissing(f"Download failed: {e}", reference=url) from e

    def _fetch(self, url: str) -> Path:
        suffix = Path(httpx.URL(url).path).suffix
        deadline = time.monotonic() + self.transfer_timeout
        with self.client.stream("GET", url) as response:
            response.raise_for_status()
            tmp = tempfile.NamedTemporaryFile(delete=False, suffix=suffix)
            try:
                with tmp:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        tmp.write(chunk)
                        if time.monotonic() > deadline:
                            raise httpx.ReadTimeout(
                                f"Transfer exceeded {self.transfer_timeout}s",
                                request=response.request,
                            )
            except httpx.HTTPError:
                Path(tmp.name).unlink(missing_ok=True)
                raise
        logger.debug("download_complete", url=url, path=tmp.name)
        return Path(tmp.name)

    def close(self) -> None:
        self.client.close()
