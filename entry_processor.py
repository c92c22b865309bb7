"""
Turning fetched entries into downloads.

Entries are filtered by date, grouped per day, and every attached image and
video is downloaded in order under a deterministic file name.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from kidsnote_api import Entry, MediaAsset
from media_downloader import RetryingDownloader

logger = logging.getLogger(__name__)

IMAGES = "images"
VIDEOS = "videos"
ALL = "all"
CONTENT_TYPES = (IMAGES, VIDEOS, ALL)

UNKNOWN_DATE = "unknown_date"


@dataclass(frozen=True)
class DownloadTarget:
    url: str
    file_name: str
    media_type: str


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one file, sent to the progress sink."""

    media_type: str
    current: int
    total: int
    file_name: str
    percent: float | None = None


@dataclass
class ProcessStats:
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    dates: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.downloaded + self.skipped + self.failed


def format_date(date_string: str | None) -> str:
    """
    Format a ``YYYY-MM-DD`` date the way file names have always used it.

    Every ``-`` becomes ``년`` and ``일`` is appended, so ``2024-01-15``
    turns into ``2024년01년15일``.
    """
    if not date_string or date_string == UNKNOWN_DATE:
        return UNKNOWN_DATE
    return date_string.replace("-", "년") + "일"


def build_file_name(
    formatted_date: str,
    child_name: str,
    asset_id: str,
    extension: str,
    class_name: str | None = None,
) -> str:
    """
    Build ``{date}-{class}-{child}-{id}{ext}``, leaving out an absent class.

    Parameters
    ----------
    formatted_date : str
        Output of ``format_date``.
    child_name : str
        Child's display name.
    asset_id : str
        Id of the image or video.
    extension : str
        Extension including the dot, or ``""``.
    class_name : str | None
        Class of a report; albums have none.

    Returns
    -------
    str
        The file name.
    """
    parts = [formatted_date]
    if class_name:
        parts.append(class_name)
    parts.extend([child_name, str(asset_id)])
    return "-".join(parts) + extension


def _parse_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def is_date_in_range(date_string: str | None, start_date=None, end_date=None) -> bool:
    """
    Check ``date_string`` against the inclusive ``[start_date, end_date]`` range.

    Unset bounds are open, and a date that cannot be parsed is in range.
    """
    start = _parse_date(start_date)
    end = _parse_date(end_date)
    if start is None and end is None:
        return True

    entry_date = _parse_date(date_string)
    if entry_date is None:
        return True

    if start is not None and entry_date < start:
        return False
    if end is not None and entry_date > end:
        return False
    return True


def group_by_date(entries: list[Entry], start_date=None, end_date=None) -> dict[str, list[Entry]]:
    """
    Bucket the in-range entries by day.

    Returns
    -------
    dict[str, list[Entry]]
        Date string to entries, keys in ascending order, entries in input order.
    """
    groups: dict[str, list[Entry]] = defaultdict(list)
    for entry in entries:
        if not is_date_in_range(entry.date, start_date, end_date):
            continue
        groups[entry.date or UNKNOWN_DATE].append(entry)

    return {key: groups[key] for key in sorted(groups)}


def targets_for_entry(entry: Entry, content_type: str, is_report: bool) -> list[DownloadTarget]:
    """
    List the downloads of one entry: its images first, then its video.

    Parameters
    ----------
    entry : Entry
        Report or album record.
    content_type : str
        ``images``, ``videos`` or ``all``.
    is_report : bool
        Reports carry the class name in the file name, albums do not.

    Returns
    -------
    list[DownloadTarget]
        Targets in download order.
    """
    formatted_date = format_date(entry.date)
    class_name = entry.class_name if is_report else None

    def target(asset: MediaAsset, url: str, media_type: str) -> DownloadTarget:
        file_name = build_file_name(
            formatted_date, entry.child_name, asset.id, asset.extension, class_name
        )
        return DownloadTarget(url=url, file_name=file_name, media_type=media_type)

    targets = []
    if content_type in (IMAGES, ALL):
        targets.extend(target(image, image.original_url, "image") for image in entry.images)
    if content_type in (VIDEOS, ALL) and entry.video is not None:
        targets.append(target(entry.video, entry.video.best_url, "video"))
    return targets


class EntryProcessor:
    """
    Downloads the media of a list of entries into one directory.

    Parameters
    ----------
    downloader : RetryingDownloader
        Performs the individual downloads.
    output_dir : Path
        Flat directory all files are written to.
    on_log : callable | None
        Receives human readable messages.
    on_progress : callable | None
        Receives ``ProgressEvent`` objects.
    pause : float
        Seconds to wait after each image.
    sleep : callable
        Used for the pause.
    """

    def __init__(
        self,
        downloader: RetryingDownloader,
        output_dir: Path,
        on_log=None,
        on_progress=None,
        pause: float = 0.1,
        sleep=time.sleep,
    ):
        self.downloader = downloader
        self.output_dir = Path(output_dir)
        self.on_log = on_log or (lambda message: None)
        self.on_progress = on_progress
        self.pause = pause
        self.sleep = sleep

    def plan(
        self,
        entries: list[Entry],
        content_type: str = ALL,
        is_report: bool = True,
        start_date=None,
        end_date=None,
    ) -> list[DownloadTarget]:
        """Return every target ``process`` would download, in order."""
        return [
            target
            for day_entries in group_by_date(entries, start_date, end_date).values()
            for entry in day_entries
            for target in targets_for_entry(entry, content_type, is_report)
        ]

    def process(
        self,
        entries: list[Entry],
        content_type: str = ALL,
        is_report: bool = True,
        start_date=None,
        end_date=None,
    ) -> ProcessStats:
        """
        Filter, group and download.

        Parameters
        ----------
        entries : list[Entry]
            Fetched entries.
        content_type : str
            ``images``, ``videos`` or ``all``.
        is_report : bool
            Whether the entries are reports (otherwise albums).
        start_date, end_date : str | date | None
            Inclusive date range; either bound may be left open.

        Returns
        -------
        ProcessStats
            Counts only; per-file outcomes go to the log sink.
        """
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"Unknown content type: {content_type}")

        stats = ProcessStats()
        groups = group_by_date(entries, start_date, end_date)

        for day, day_entries in groups.items():
            self.on_log(f"Processing {day}...")
            day_count = 0

            for entry in day_entries:
                targets = targets_for_entry(entry, content_type, is_report)
                for position, target in enumerate(targets, 1):
                    self._download(target, position, len(targets), stats)
                    day_count += 1
                    if target.media_type == "image":
                        self.sleep(self.pause)

            self.on_log(f"Finished {day} ({day_count} items)")
            stats.dates.append(day)

        if stats.dates:
            self.on_log(f"Processed {len(stats.dates)} dates: {', '.join(stats.dates)}")
        return stats

    def _download(self, target: DownloadTarget, current: int, total: int, stats: ProcessStats):
        self.on_log(f"Downloading {target.media_type}: {target.file_name}")

        def report(percent: float | None) -> None:
            if self.on_progress:
                self.on_progress(
                    ProgressEvent(target.media_type, current, total, target.file_name, percent)
                )

        report(None)
        result = self.downloader.download(
            target.url, self.output_dir / target.file_name, on_progress=report
        )

        if result.skipped:
            stats.skipped += 1
            self.on_log(f"Skipped (already exists): {target.file_name}")
        elif result.success:
            stats.downloaded += 1
            self.on_log(f"Downloaded: {target.file_name}")
        else:
            stats.failed += 1
            self.on_log(f"Failed: {target.file_name} - {result.error}")
