# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Artifact Downloader

Single responsibility: Deliver artifact bytes matching a declared checksum

Partial downloads survive between attempts (and sessions) under
``downloads/<sha256(url)>.part`` and are resumed with a ``Range`` request.
Failed attempts are retried with exponential backoff.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import httpx

from keg.core.errors import ChecksumMismatch, DownloadFailed, TransportError

logger = logging.getLogger(__name__)

BytesCallback = Callable[[int], None]

# Client errors worth another attempt
RETRYABLE_CLIENT_STATUS = {408, 425, 429}


class Fetcher(Protocol):
    """Transport collaborator used by the installer"""

    async def fetch(self, url: str, expected_checksum: str, progress: Optional[BytesCallback] = None) -> bytes:
        ...


@dataclass
class RetryConfig:
    """Retry settings for downloads"""
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    backoff_multiplier: float = 2.0
    timeout: float = 300.0

    @classmethod
    def from_config(cls, config: Any) -> "RetryConfig":
        return cls(
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            max_retry_delay=config.max_retry_delay,
            backoff_multiplier=config.backoff_multiplier,
            timeout=config.http_timeout,
        )


class _RestartDownload(Exception):
    """Partial file is unusable; retry from byte zero."""


class Downloader:
    """
    HTTP(S) and file:// fetcher with resume and retry.

    Features:
    - Resumable partial downloads via Range requests
    - Automatic retry with exponential backoff
    - SHA-256 verification before bytes are returned
    """

    def __init__(
        self,
        downloads_dir: Path,
        retry: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "keg/1.0"
    ):
        """
        Initialize downloader.

        Args:
            downloads_dir: Directory for partial downloads
            retry: Retry configuration
            client: HTTP client to use (one is created and owned if omitted)
            user_agent: User-Agent header for the owned client
        """
        self.downloads_dir = Path(downloads_dir)
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        self.retry = retry or RetryConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.retry.timeout),
            follow_redirects=True,
            headers={"User-Agent": user_agent}
        )

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "Downloader":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def part_path(self, url: str) -> Path:
        return self.downloads_dir / f"{hashlib.sha256(url.encode()).hexdigest()}.part"

    async def fetch(self, url: str, expected_checksum: str, progress: Optional[BytesCallback] = None) -> bytes:
        """
        Fetch an artifact and verify its checksum.

        Args:
            url: http(s):// or file:// URL
            expected_checksum: Declared SHA-256 (hex)
            progress: Called with the byte count received so far

        Returns:
            Payload bytes whose SHA-256 equals ``expected_checksum``

        Raises:
            ChecksumMismatch: If every attempt produced the wrong digest
            DownloadFailed: If the transport failed on every attempt
        """
        expected = expected_checksum.strip().lower()
        if url.startswith("file://"):
            return await self._read_local(url, expected)

        last_error: Optional[TransportError] = None
        delay = self.retry.retry_delay

        for attempt in range(self.retry.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.retry.max_retries} for {url} after {delay}s")
                await asyncio.sleep(delay)
                # Exponential backoff
                delay = min(delay * self.retry.backoff_multiplier, self.retry.max_retry_delay)

            try:
                payload = await asyncio.wait_for(self._fetch_once(url, progress), timeout=self.retry.timeout)
            except _RestartDownload as e:
                last_error = DownloadFailed(url, str(e))
                logger.warning(f"Restarting download of {url}: {e}")
                continue
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = DownloadFailed(url, f"HTTP {status}")
                if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUS:
                    logger.error(f"Download of {url} failed with HTTP {status}, not retrying")
                    raise last_error
                logger.warning(f"Download attempt {attempt + 1} of {url} failed: HTTP {status}")
                continue
            except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
                reason = str(e) or type(e).__name__
                last_error = DownloadFailed(url, reason)
                logger.warning(f"Download attempt {attempt + 1} of {url} failed: {reason}")
                continue

            actual = hashlib.sha256(payload).hexdigest()
            if actual != expected:
                await _remove_part(self.part_path(url))
                last_error = ChecksumMismatch(url, expected, actual)
                logger.warning(f"Checksum mismatch for {url} (attempt {attempt + 1}), discarding partial download")
                continue

            await _remove_part(self.part_path(url))
            if attempt > 0:
                logger.info(f"Retry successful for {url}")
            return payload

        logger.error(f"Final retry failed for {url}: {last_error}")
        raise last_error

    async def _fetch_once(self, url: str, progress: Optional[BytesCallback]) -> bytes:
        part = self.part_path(url)
        offset = await aiofiles.os.path.getsize(part) if await aiofiles.os.path.exists(part) else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        async with self.client.stream("GET", url, headers=headers) as response:
            if response.status_code == 416:
                await _remove_part(part)
                raise _RestartDownload("server rejected resume range")
            response.raise_for_status()

            if response.status_code == 206 and offset:
                logger.debug(f"Resuming {url} at byte {offset}")
                mode = "ab"
            else:
                mode = "wb"
                offset = 0

            async with aiofiles.open(part, mode) as f:
                async for chunk in response.aiter_bytes():
                    await f.write(chunk)
                    offset += len(chunk)
                    _notify(progress, offset)

        async with aiofiles.open(part, "rb") as f:
            return await f.read()

    async def _read_local(self, url: str, expected: str) -> bytes:
        path = Path(unquote(urlparse(url).path))
        try:
            async with aiofiles.open(path, "rb") as f:
                payload = await f.read()
        except OSError as e:
            raise DownloadFailed(url, str(e))

        actual = hashlib.sha256(payload).hexdigest()
        if actual != expected:
            raise ChecksumMismatch(url, expected, actual)
        return payload


async def _remove_part(part: Path):
    try:
        await aiofiles.os.remove(part)
    except FileNotFoundError:
        pass


def _notify(progress: Optional[BytesCallback], count: int):
    if progress is None:
        return
    try:
        progress(count)
    except Exception:
        logger.exception("Progress callback failed")
