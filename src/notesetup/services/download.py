"""Download service with checksum validation for installer scripts."""

import hashlib
import os
from typing import Optional
from urllib.parse import urlparse

import requests

from notesetup.errors import DownloadError
from notesetup.services.stage_tracker import INSTALL_LOG


class DownloadService:
    """Fetches remote files over HTTPS, reporting progress to the install log."""

    CHUNK_SIZE = 8192

    def __init__(self, tracker, logger, requests_module=requests, timeout: float = 60.0):
        self.tracker = tracker
        self.logger = logger
        self.requests = requests_module
        self.timeout = timeout

    def download_file(
        self,
        url: str,
        dest_path: str,
        description: str = "Downloading...",
        expected_sha256: Optional[str] = None,
    ) -> str:
        if urlparse(url).scheme.lower() != "https":
            raise DownloadError(f"Refusing to download {description} over a non-HTTPS URL: {url}")

        self.logger.info("Downloading %s to %s", url, dest_path)
        self.tracker.log(INSTALL_LOG, f"{description} ({url})")
        hasher = hashlib.sha256() if expected_sha256 else None

        try:
            with self.requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

                received = 0
                with open(dest_path, "wb") as file_obj:
                    for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                        if not chunk:
                            continue
                        file_obj.write(chunk)
                        received += len(chunk)
                        if hasher:
                            hasher.update(chunk)
        except self.requests.RequestException as exc:
            raise DownloadError(f"Download failed for {description}: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Could not write {dest_path}: {exc}") from exc

        if hasher:
            downloaded_sha = hasher.hexdigest()
            if downloaded_sha != expected_sha256.strip().lower():
                try:
                    os.remove(dest_path)
                except OSError:
                    pass
                raise DownloadError(
                    f"Checksum mismatch for {description}. Expected {expected_sha256}, "
                    f"but got {downloaded_sha}."
                )

        self.logger.debug("Downloaded %s bytes to %s", received, dest_path)
        return dest_path
