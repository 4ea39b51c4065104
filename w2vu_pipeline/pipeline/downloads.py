from __future__ import annotations

import logging
import os
from pathlib import Path

import requests

from w2vu_pipeline.errors import PipelineError

logger = logging.getLogger(__name__)


class DownloadError(PipelineError):
    pass


def download_file(url: str, dest: Path, *, chunk_size: int = 1 << 20, timeout: int = 60) -> bool:
    """Stream url to dest unless dest already exists.

    Writes to '<dest>.part' first so an interrupted download is retried on
    the next run. Returns True if a download happened.
    """
    if dest.exists():
        logger.info("%s already exists. Skipping download.", dest)
        return False

    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")
    logger.info("Downloading %s -> %s", url, dest)
    try:
        with requests.get(url, stream=True, timeout=timeout) as resp:
            if resp.status_code >= 400:
                raise DownloadError(f"GET {url} failed: {resp.status_code}")
            with part.open("wb") as fh:
                for chunk in resp.iter_content(chunk_size=chunk_size):
                    if chunk:
                        fh.write(chunk)
    except requests.RequestException as exc:
        raise DownloadError(f"GET {url} failed: {exc}") from exc

    os.replace(part, dest)
    logger.info("Downloaded %s", dest)
    return True
