"""Download service for installer scripts and binaries."""

import os
import time
from urllib.parse import urlparse

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from stackbillinstaller.errors import InstallerError


class DownloadService:
    """Fetches remote artifacts over HTTPS with retries and a progress bar."""

    def __init__(
        self,
        logger,
        console,
        requests_module,
        timeout: float = 60.0,
        retry_count: int = 2,
        retry_backoff_seconds: float = 2.0,
    ):
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds

    def ensure_https(self, url: str):
        if urlparse(url).scheme.lower() != "https":
            raise InstallerError(f"Refusing to download over insecure transport: {url}")

    def fetch_text(self, url: str) -> str:
        self.ensure_https(url)
        last_error = None
        for attempt in range(1, self.retry_count + 2):
            try:
                response = self.requests.get(url, timeout=self.timeout)
                response.raise_for_status()
                return response.text.strip()
            except self.requests.RequestException as exc:
                last_error = exc
                self._backoff(attempt, url, exc)
        raise InstallerError(f"Could not fetch {url}: {last_error}")

    def download_file(self, url: str, dest_path: str, description: str = "Downloading..."):
        self.logger.info("Downloading %s to %s", url, dest_path)
        self.ensure_https(url)

        last_error = None
        for attempt in range(1, self.retry_count + 2):
            try:
                self._stream_to_file(url, dest_path, description)
                return
            except self.requests.RequestException as exc:
                last_error = exc
                self._backoff(attempt, url, exc)

        raise InstallerError(f"Download failed for {description}: {last_error}")

    def _stream_to_file(self, url: str, dest_path: str, description: str):
        with self.requests.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            total_size = int(response.headers.get("Content-Length", 0))

            os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=self.console,
            ) as progress:
                task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                with open(dest_path, "wb") as file_obj:
                    for chunk in response.iter_content(chunk_size=8192):
                        if not chunk:
                            continue
                        file_obj.write(chunk)
                        progress.update(task, advance=len(chunk))

    def _backoff(self, attempt: int, url: str, exc: Exception):
        if attempt > self.retry_count:
            return
        self.logger.warning(
            "Download of %s failed on attempt %s/%s: %s. Retrying in %.1fs.",
            url,
            attempt,
            self.retry_count + 1,
            exc,
            self.retry_backoff_seconds,
        )
        time.sleep(self.retry_backoff_seconds)
