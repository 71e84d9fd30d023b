# mcfleet/services/downloads.py
"""Streaming file downloads for server artifacts and Java runtimes."""

import logging
import os
from pathlib import Path

import httpx

from mcfleet.core.config import APP_VERSION, DOWNLOAD_TIMEOUT_SECONDS
from mcfleet.core.errors import IOFailure

logger = logging.getLogger(__name__)

USER_AGENT = f"mcfleet/{APP_VERSION}"


def download_file(url: str, dest: Path, timeout: float = DOWNLOAD_TIMEOUT_SECONDS) -> Path:
    """Stream url into dest via a temporary file; raises IOFailure on any error."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(dest.name + ".part")

    logger.info("[Download] %s -> %s", url, dest)
    try:
        with httpx.stream(
            "GET",
            url,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=timeout,
        ) as response:
            response.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
        os.replace(tmp_path, dest)
    except (httpx.HTTPError, OSError) as e:
        tmp_path.unlink(missing_ok=True)
        raise IOFailure(f"Download failed for {url}: {e}") from e

    logger.info("[Download] Saved %s (%d bytes)", dest.name, dest.stat().st_size)
    return dest
