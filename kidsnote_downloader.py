#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "requests>=2.28.0",
#     "tqdm>=4.64.0",
#     "playwright>=1.40.0",
#     "pyyaml>=6.0",
# ]
# ///
"""
KidsNote Photo Downloader

Downloads the photos and videos attached to your children's KidsNote reports
and albums.

Usage:
    # Log in with your KidsNote account and pick the children interactively:
    uv run kidsnote_downloader.py --username my_id

    # Only photos from albums, for one month:
    python kidsnote_downloader.py -u my_id --source albums --type images \\
        --start-date 2024-01-01 --end-date 2024-01-31

    # If the login form is blocked, log in through a browser instead:
    uv run --with playwright playwright install chromium  # first time only
    python kidsnote_downloader.py --login
"""

import argparse
import getpass
import json
import logging
import os
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field, fields
from datetime import date
from pathlib import Path

import yaml
from tqdm import tqdm

from entry_processor import (
    ALL,
    CONTENT_TYPES,
    DownloadTarget,
    EntryProcessor,
    ProcessStats,
)
from kidsnote_api import (
    ALBUM,
    BASE_URL,
    LOGIN_PATH,
    REPORT,
    SESSION_COOKIE,
    SESSION_FILENAME,
    AuthError,
    Child,
    ForbiddenError,
    JsonSessionStore,
    KidsNoteClient,
    KidsNoteError,
    NetworkError,
    PaginationFetcher,
    ResponseDecodeError,
    ServerError,
    Session,
    SessionExpiredError,
    SessionProvider,
    SessionRequiredError,
    StorageError,
)
from media_downloader import RetryingDownloader, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "output_dir": "./kidsnote_photos",
    "content_type": ALL,
    "source": "reports",
    "max_attempts": 5,
    "retry_delay": 5.0,
    "pause": 0.1,
    "base_page_size": 9999,
    "max_iterations": 10,
}

# Searched in order when --config is not given
DEFAULT_CONFIG_FILES = [".kidsnote.yaml", ".kidsnote.yml", ".kidsnote.json"]

SOURCES = {"reports": REPORT, "albums": ALBUM}

FALLBACK_DIRS = [
    Path.home() / "Downloads" / "KidsNote",
    Path.home() / "Pictures" / "KidsNote",
    Path.home() / "Documents" / "KidsNote",
    Path(tempfile.gettempdir()) / "KidsNote",
]


@dataclass
class DownloaderConfig:
    """Settings read from a config file, overridable from the command line."""

    output_dir: str = DEFAULT_CONFIG["output_dir"]
    content_type: str = DEFAULT_CONFIG["content_type"]
    source: str = DEFAULT_CONFIG["source"]
    max_attempts: int = DEFAULT_CONFIG["max_attempts"]
    retry_delay: float = DEFAULT_CONFIG["retry_delay"]
    pause: float = DEFAULT_CONFIG["pause"]
    base_page_size: int = DEFAULT_CONFIG["base_page_size"]
    max_iterations: int = DEFAULT_CONFIG["max_iterations"]
    page_size: int | None = None
    username: str = ""
    children: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "DownloaderConfig":
        """
        Build settings from parsed file contents.

        Keys that match no setting are reported with a warning and dropped.
        A bare string under ``children`` becomes a one-item list.

        Parameters
        ----------
        data : dict
            Mapping read from ``.kidsnote.yaml`` or ``.kidsnote.json``.

        Returns
        -------
        DownloaderConfig
            The settings, with defaults for every key not given.

        Raises
        ------
        ValueError
            If ``content_type`` or ``source`` names an unsupported value.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

        config = cls(**{key: value for key, value in data.items() if key in known})
        if config.content_type not in CONTENT_TYPES:
            raise ValueError(f"content_type must be one of {', '.join(CONTENT_TYPES)}")
        if config.source not in SOURCES:
            raise ValueError(f"source must be one of {', '.join(SOURCES)}")
        if isinstance(config.children, str):
            config.children = [config.children]
        return config

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff=self.retry_delay)


def load_config(config_path: Path | None = None) -> DownloaderConfig:
    """
    Read settings from ``config_path`` or the first ``.kidsnote.*`` file found.

    ``.json`` files are parsed as JSON, everything else as YAML.

    Parameters
    ----------
    config_path : Path | None
        File named with ``--config``. When None the working directory is
        searched for ``DEFAULT_CONFIG_FILES`` in order.

    Returns
    -------
    DownloaderConfig
        Settings from the file, or the defaults when no file exists.

    Raises
    ------
    FileNotFoundError
        If an explicit ``config_path`` does not exist.
    """
    if config_path:
        paths_to_try = [Path(config_path)]
    else:
        paths_to_try = [Path(f) for f in DEFAULT_CONFIG_FILES]

    config_file = next((path for path in paths_to_try if path.exists()), None)
    if config_file is None:
        if config_path:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return DownloaderConfig()

    with open(config_file, encoding="utf-8") as f:
        content = f.read()

    if config_file.suffix == ".json":
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)

    logger.info("Loaded config from %s", config_file)
    return DownloaderConfig.from_dict(data or {})


def prepare_output_dir(candidates: list[Path]) -> Path:
    """
    Return the first candidate directory that can be created and written to.

    Raises
    ------
    StorageError
        If none of the candidates is usable.
    """
    problems = []
    for candidate in candidates:
        candidate = Path(candidate).expanduser()
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            probe = candidate / ".kidsnote_write_test"
            probe.write_bytes(b"")
            probe.unlink()
            return candidate
        except OSError as e:
            logger.warning("Cannot use %s: %s", candidate, e)
            problems.append(f"{candidate} ({e.strerror or e})")

    raise StorageError("No writable download directory: " + ", ".join(problems))


class KidsNoteBrowserAuth:
    """
    Session login through a real Chromium window.

    Useful when the form login is refused; the user signs in by hand and the
    ``sessionid`` cookie is taken from the browser context.
    """

    @staticmethod
    def get_session_from_browser(
        login_url: str = f"{BASE_URL}{LOGIN_PATH}", timeout_ms: int = 300000
    ) -> str:
        """
        Open a browser for the user to log in and return the session id.

        Returns
        -------
        str
            The ``sessionid`` cookie value.

        Raises
        ------
        AuthError
            If Playwright is missing or no session cookie was set.
        """
        try:
            from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise AuthError(
                "Playwright is required for browser login. Install it with: "
                "pip install playwright && playwright install chromium",
                cause="browser",
            ) from e

        print("\n" + "=" * 60)
        print("Opening browser for KidsNote login...")
        print("Please log in to your KidsNote account.")
        print("The browser will close automatically after login.")
        print("=" * 60 + "\n")

        with sync_playwright() as p:
            browser = p.chromium.launch(headless=False)
            context = browser.new_context()
            page = context.new_page()
            page.goto(login_url)

            print("Waiting for login...")
            try:
                page.wait_for_url(lambda url: "/login" not in url, timeout=timeout_ms)
            except PlaywrightTimeoutError as e:
                logger.warning("Timed out waiting for login: %s", e)

            cookies = context.cookies()
            browser.close()

        session_id = find_session_cookie(cookies)
        if not session_id:
            raise AuthError("No session cookie was set by the browser login", cause="browser")
        return session_id


def find_session_cookie(cookies: list[dict]) -> str | None:
    """Pick the KidsNote ``sessionid`` out of a browser cookie dump."""
    for cookie in cookies:
        if cookie.get("name") == SESSION_COOKIE and "kidsnote" in cookie.get("domain", ""):
            return cookie.get("value") or None
    return None


@dataclass
class ChildReport:
    """What happened to one child during a run."""

    child: Child
    stats: ProcessStats | None = None
    planned: list[DownloadTarget] = field(default_factory=list)
    error: str | None = None


@dataclass
class RunSummary:
    output_dir: Path
    reports: list[ChildReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_children(self) -> list[ChildReport]:
        return [report for report in self.reports if report.error]

    def totals(self) -> dict:
        totals = {"downloaded": 0, "skipped": 0, "failed": 0}
        for report in self.reports:
            if report.stats:
                totals["downloaded"] += report.stats.downloaded
                totals["skipped"] += report.stats.skipped
                totals["failed"] += report.stats.failed
        return totals


class DownloadOrchestrator:
    """
    Drives a whole download: session, children, fetching and processing.

    Parameters
    ----------
    client : KidsNoteClient
        Client holding the session.
    output_dirs : list[Path]
        Candidate output directories, tried in order.
    config : DownloaderConfig | None
        Retry, pacing and pagination settings.
    on_log : callable | None
        Receives human readable messages.
    on_progress : callable | None
        Receives ``ProgressEvent`` objects.
    sleep : callable
        Used for retry backoff and pacing.
    """

    def __init__(
        self,
        client: KidsNoteClient,
        output_dirs: list[Path],
        config: DownloaderConfig | None = None,
        on_log=None,
        on_progress=None,
        sleep=time.sleep,
    ):
        self.client = client
        self.output_dirs = list(output_dirs)
        self.config = config or DownloaderConfig()
        self.on_log = on_log or (lambda message: None)
        self.on_progress = on_progress
        self.sleep = sleep

        self.fetcher = PaginationFetcher(
            client,
            base_page_size=self.config.base_page_size,
            max_iterations=self.config.max_iterations,
            on_log=self.on_log,
        )
        self.downloader = RetryingDownloader(client, self.config.retry_policy, sleep=sleep)
        self._children: list[Child] | None = None
        self._cancel = threading.Event()

    def ensure_session(self, username: str | None = None, password: str | None = None) -> Session:
        """
        Reuse the stored session if it still works, otherwise log in.

        Raises
        ------
        SessionRequiredError
            If there is no usable session and no credentials were given.
        AuthError
            If the login itself fails.
        """
        session = self.client.session or self.client.restore_session()
        if session is not None:
            try:
                self._children = self.client.get_children()
                self.on_log("Using saved session")
                return session
            except (SessionExpiredError, ForbiddenError):
                self.on_log("Saved session is no longer valid")
                if not (username and password):
                    raise

        if not (username and password):
            raise SessionRequiredError("No saved session, a username and password are required")

        session = self.client.login(username, password)
        self.on_log("Login successful")
        self._children = None
        return session

    @property
    def children(self) -> list[Child]:
        if self._children is None:
            self._children = self.client.get_children()
        return self._children

    def resolve_children(self, selection: list[str] | None) -> list[Child]:
        """
        Map ids, 1-based list numbers or ``all`` to children.

        Raises
        ------
        KidsNoteError
            If an item matches no child.
        """
        if not selection or any(item.lower() == "all" for item in selection):
            return list(self.children)

        by_id = {child.id: child for child in self.children}
        by_index = {str(child.index): child for child in self.children}
        resolved = []
        for item in selection:
            child = by_id.get(item) or by_index.get(item)
            if child is None:
                raise KidsNoteError(f"Unknown child: {item}")
            if child not in resolved:
                resolved.append(child)
        return resolved

    def cancel(self) -> None:
        """Stop before the next child; the current one finishes."""
        self._cancel.set()

    def run(
        self,
        child_ids: list[str],
        content_type: str = ALL,
        is_report: bool = True,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        dry_run: bool = False,
    ) -> RunSummary:
        """
        Download the media of each child in turn.

        A child whose listing fails with a server, network or decoding error
        is recorded and skipped. Anything else aborts the run, including an
        expired session and a child id that is not on the account.

        Parameters
        ----------
        child_ids : list[str]
            Children to process, in order.
        content_type : str
            ``images``, ``videos`` or ``all``.
        is_report : bool
            Download from reports (True) or albums (False).
        start_date, end_date : date | str | None
            Inclusive date range.
        dry_run : bool
            Only plan the downloads.

        Returns
        -------
        RunSummary
            Per-child outcome.
        """
        self._cancel.clear()
        output_dir = prepare_output_dir(self.output_dirs)
        summary = RunSummary(output_dir=output_dir)
        kind = REPORT if is_report else ALBUM

        processor = EntryProcessor(
            self.downloader,
            output_dir,
            on_log=self.on_log,
            on_progress=self.on_progress,
            pause=self.config.pause,
            sleep=self.sleep,
        )

        self.on_log(f"Saving to {output_dir}")
        if start_date or end_date:
            self.on_log(f"Date filter: {start_date or 'any'} ~ {end_date or 'any'}")

        for child in self._lookup(child_ids):
            if self._cancel.is_set():
                self.on_log("Download cancelled")
                summary.cancelled = True
                break

            report = ChildReport(child)
            summary.reports.append(report)
            self.on_log(f"Processing {child.name} ({child.id})")

            try:
                entries = self.fetcher.fetch_all(child.id, kind, page_size=self.config.page_size)
                if dry_run:
                    report.planned = processor.plan(
                        entries, content_type, is_report, start_date, end_date
                    )
                else:
                    report.stats = processor.process(
                        entries, content_type, is_report, start_date, end_date
                    )
            except (ServerError, NetworkError, ResponseDecodeError) as e:
                report.error = str(e)
                self.on_log(f"Error while processing {child.name}: {e}")
                continue

            self.on_log(f"Finished {child.name}")

        return summary

    def _lookup(self, child_ids: list[str]) -> list[Child]:
        known = {child.id: child for child in self.children}
        missing = [child_id for child_id in child_ids if child_id not in known]
        if missing:
            raise KidsNoteError(f"Unknown child: {', '.join(missing)}")
        return [known[child_id] for child_id in child_ids]


class TqdmProgress:
    """Shows one tqdm bar per file from ``ProgressEvent`` objects."""

    def __init__(self):
        self.bar = None
        self.file_name = None

    def __call__(self, event) -> None:
        if event.file_name != self.file_name:
            self.close()
            self.file_name = event.file_name
            self.bar = tqdm(
                total=100,
                desc=f"{event.media_type} {event.current}/{event.total}",
                unit="%",
                leave=False,
            )
        if event.percent is not None:
            self.bar.update(min(event.percent, 100) - self.bar.n)

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None
        self.file_name = None


def setup_logging(debug: bool = False) -> None:
    """Send diagnostics to stderr, everything with --debug, warnings and errors otherwise."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.WARNING)


def select_children(children: list[Child]) -> list[Child]:
    """
    Let the user select children if several are available.

    Parameters
    ----------
    children : list[Child]
        Children of the account.

    Returns
    -------
    list[Child]
        Selected children.
    """
    if len(children) <= 1:
        return list(children)

    print("\nMultiple children found. Please select:")
    for child in children:
        print(f"  {child.index}. {child.name}")

    while True:
        try:
            choice = input("\nEnter numbers separated by commas (or 'all'): ").strip()
        except (EOFError, KeyboardInterrupt):
            return []
        if choice.lower() in ("all", ""):
            return list(children)
        try:
            numbers = [int(part) for part in choice.split(",") if part.strip()]
        except ValueError:
            numbers = []
        if numbers and all(1 <= n <= len(children) for n in numbers):
            return [children[n - 1] for n in dict.fromkeys(numbers)]
        print("Invalid choice. Please try again.")


def _parse_date_arg(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', use YYYY-MM-DD") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download the photos and videos of your children from KidsNote",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s --username my_id
    %(prog)s -u my_id --source albums --type videos --children all
    %(prog)s -u my_id --start-date 2024-03-01 --end-date 2024-03-31
    %(prog)s --login                 # log in through a browser window
    %(prog)s --logout                # forget the saved session
        """,
    )

    parser.add_argument(
        "--username",
        "-u",
        default=os.environ.get("KIDSNOTE_USERNAME", ""),
        help="KidsNote account id (or set KIDSNOTE_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        "-p",
        default=os.environ.get("KIDSNOTE_PASSWORD", ""),
        help="KidsNote password (or set KIDSNOTE_PASSWORD env var, prompted if missing)",
    )
    parser.add_argument(
        "--session-id",
        default=os.environ.get("KIDSNOTE_SESSION_ID", ""),
        help="Use an existing sessionid cookie instead of logging in",
    )
    parser.add_argument(
        "--login",
        "-l",
        action="store_true",
        help="Open a browser for interactive login",
    )
    parser.add_argument("--logout", action="store_true", help="Forget the saved session and exit")
    parser.add_argument("--config", type=Path, help="YAML or JSON config file")
    parser.add_argument("--output", "-o", help="Output directory for downloaded files")
    parser.add_argument(
        "--type",
        "-t",
        dest="content_type",
        choices=CONTENT_TYPES,
        help="What to download (default: all)",
    )
    parser.add_argument(
        "--source",
        "-s",
        choices=list(SOURCES),
        help="Download from reports or albums (default: reports)",
    )
    parser.add_argument(
        "--children",
        "-c",
        help="Comma separated child ids or list numbers, or 'all'",
    )
    parser.add_argument("--start-date", type=_parse_date_arg, help="First day to include")
    parser.add_argument("--end-date", type=_parse_date_arg, help="Last day to include")
    parser.add_argument(
        "--page-size",
        type=int,
        help="Fetch only this many of the newest entries per child",
    )
    parser.add_argument("--dry-run", action="store_true", help="List files without downloading")
    parser.add_argument("--debug", action="store_true", help="Verbose diagnostic logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"\nError: could not load config: {e}")
        sys.exit(1)

    if args.output:
        config.output_dir = args.output
    if args.content_type:
        config.content_type = args.content_type
    if args.source:
        config.source = args.source
    if args.page_size:
        config.page_size = args.page_size
    if args.children:
        config.children = [part.strip() for part in args.children.split(",") if part.strip()]

    print("=" * 60)
    print("  KidsNote Photo Downloader")
    print("=" * 60)

    output_dir = Path(config.output_dir).expanduser()
    store = JsonSessionStore(output_dir / SESSION_FILENAME)
    client = KidsNoteClient(SessionProvider(store))

    if args.logout:
        client.logout()
        print("\n✓ Logged out, saved session removed")
        return

    progress = TqdmProgress()
    orchestrator = DownloadOrchestrator(
        client,
        output_dirs=[output_dir, *FALLBACK_DIRS],
        config=config,
        on_log=tqdm.write,
        on_progress=progress,
    )

    username = args.username or config.username
    password = args.password

    try:
        if args.login:
            client.use_session(KidsNoteBrowserAuth.get_session_from_browser())
            print("\n✓ Successfully obtained session from browser")
        elif args.session_id:
            client.use_session(args.session_id)
        elif not store.load():
            if not username:
                username = input("\nKidsNote id: ").strip()
            if not password:
                password = getpass.getpass("Password: ")

        orchestrator.ensure_session(username, password)
        children = orchestrator.children
        print(f"✓ Found {len(children)} child(ren)")

        if config.children:
            selected = orchestrator.resolve_children(config.children)
        else:
            selected = select_children(children)

        if not selected:
            print("\nNo child selected. Exiting.")
            sys.exit(1)

        print(f"\nContent: {config.content_type}, source: {config.source}")
        summary = orchestrator.run(
            [child.id for child in selected],
            content_type=config.content_type,
            is_report=SOURCES[config.source] == REPORT,
            start_date=args.start_date,
            end_date=args.end_date,
            dry_run=args.dry_run,
        )
    except AuthError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    except SessionRequiredError as e:
        print(f"\nError: {e}")
        print("Run again with --username, or with --login to use a browser.")
        sys.exit(1)
    except SessionExpiredError:
        print("\nError: Authentication failed (401)")
        print("Your session has expired. Please run again with your password.")
        sys.exit(1)
    except ForbiddenError:
        print("\nError: Access forbidden (403)")
        print("You may not have permission to access these files.")
        sys.exit(1)
    except KidsNoteError as e:
        print(f"\nError: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    finally:
        progress.close()

    if args.dry_run:
        for report in summary.reports:
            count = len(report.planned)
            print(f"\nDry run - would download {count} files for {report.child.name}:")
            for target in report.planned[:10]:
                print(f"  - {target.file_name}")
            if len(report.planned) > 10:
                print(f"  ... and {len(report.planned) - 10} more")
    else:
        totals = summary.totals()
        print("\n" + "=" * 50)
        print("Download complete!" if not summary.cancelled else "Download cancelled.")
        print(f"  Output: {summary.output_dir}")
        print(f"  Successfully downloaded: {totals['downloaded']}")
        print(f"  Skipped (already exist): {totals['skipped']}")
        print(f"  Failed: {totals['failed']}")

    if summary.failed_children:
        print("\nChildren with errors:")
        for report in summary.failed_children:
            print(f"  - {report.child.name}: {report.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
