"""
Retrying media downloads.

Each attempt streams into ``<name>.part`` next to the destination and renames
it into place only once the body is complete, so an interrupted download never
leaves a truncated file under the final name.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import requests

from kidsnote_api import KidsNoteClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a download is attempted."""

    max_attempts: int = 5
    backoff: float = 5.0


@dataclass
class DownloadResult:
    """Outcome of one download. Failures are reported here, never raised."""

    success: bool
    url: str
    path: Path | None = None
    error: str | None = None
    attempts: int = 0
    skipped: bool = False


class TransientDownloadError(Exception):
    """An attempt failed in a way worth retrying."""


class RetryingDownloader:
    """
    Downloads single files with a fixed-backoff retry policy.

    Parameters
    ----------
    client : KidsNoteClient
        Used for the streamed GET.
    policy : RetryPolicy
        Attempts and delay between them.
    sleep : callable
        Called with the backoff in seconds between attempts.
    skip_existing : bool
        Report an existing destination as skipped instead of downloading again.
    timeout : float
        Read timeout of a media request in seconds.
    """

    def __init__(
        self,
        client: KidsNoteClient,
        policy: RetryPolicy | None = None,
        sleep=time.sleep,
        skip_existing: bool = True,
        timeout: float = 120,
    ):
        self.client = client
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.skip_existing = skip_existing
        self.timeout = timeout

    def download(self, url: str, destination: Path, on_progress=None) -> DownloadResult:
        """
        Download ``url`` to ``destination``.

        Parameters
        ----------
        url : str
            Media URL.
        destination : Path
            Final file path.
        on_progress : callable | None
            Called with a percentage after each chunk when the size is known.

        Returns
        -------
        DownloadResult
            Success with the saved path, or failure with the last error.
        """
        destination = Path(destination)
        if not url:
            return DownloadResult(False, url, error="No URL available")

        if self.skip_existing and destination.exists():
            return DownloadResult(True, url, path=destination, skipped=True)

        last_error = ""
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                self._attempt(url, destination, on_progress)
                return DownloadResult(True, url, path=destination, attempts=attempt)
            except (requests.RequestException, TransientDownloadError) as e:
                last_error = str(e)
            except OSError as e:
                logger.warning("Cannot write %s: %s", destination, e)
                return DownloadResult(
                    False, url, error=f"Cannot write {destination}: {e}", attempts=attempt
                )

            if attempt < self.policy.max_attempts:
                logger.info(
                    "Download of %s failed (%s), retrying in %ss (%d/%d)",
                    destination.name,
                    last_error,
                    self.policy.backoff,
                    attempt,
                    self.policy.max_attempts,
                )
                self.sleep(self.policy.backoff)

        logger.warning("Giving up on %s: %s", destination.name, last_error)
        return DownloadResult(
            False, url, error=last_error, attempts=self.policy.max_attempts
        )

    def _attempt(self, url: str, destination: Path, on_progress) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(destination.name + ".part")

        try:
            response = self.client.open_stream(url, timeout=self.timeout)
            try:
                if response.status_code != 200:
                    raise TransientDownloadError(
                        f"Download failed: HTTP {response.status_code}"
                    )

                total = _content_length(response)
                written = 0
                with open(tmp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if on_progress and total > 0:
                            on_progress(written / total * 100)

                if total > 0 and written < total:
                    raise TransientDownloadError(f"Incomplete download ({written}/{total} bytes)")
            finally:
                response.close()

            tmp_path.replace(destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise


def _content_length(response: requests.Response) -> int:
    """Declared body size, or 0 when the header is missing or not a plain integer."""
    value = (response.headers.get("Content-Length") or "").strip()
    return int(value) if value.isdecimal() else 0
