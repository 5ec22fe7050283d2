# -*- coding: utf-8 -*-
"""
Variant download.

The selected variant goes into the lane's output folder; the other
variants go into an "alternates" subfolder next to it.
"""

import logging
from pathlib import Path
from typing import List, Optional

import httpx

from lanes.proxy import proxy_url

logger = logging.getLogger(__name__)

ALTERNATES_DIR = "alternates"


def variant_paths(output_dir: Path, base_name: str, count: int) -> List[Path]:
    paths = []
    for index in range(count):
        if index == 0:
            paths.append(output_dir / f"{base_name}.mp4")
        else:
            paths.append(output_dir / ALTERNATES_DIR / f"{base_name}_v{index + 1}.mp4")
    return paths


async def download_variants(
    urls: List[str],
    output_dir: Path,
    base_name: str,
    proxy: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Path]:
    """Download each url; returns the paths that were written"""
    output_dir = Path(output_dir)
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(proxy=proxy_url(proxy), timeout=300.0, follow_redirects=True)

    written = []
    try:
        for url, path in zip(urls, variant_paths(output_dir, base_name, len(urls))):
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
            except httpx.HTTPError as e:
                logger.warning(f"[Download] Failed to download {path.name}: {e}")
                continue
            written.append(path)
            logger.info(f"[Download] Saved {path}")
    finally:
        if owns_client:
            await client.aclose()
    return written
