#!/usr/bin/env python3
"""
mvwdl - MediathekViewWeb Downloader

Searches the MediathekViewWeb feed and downloads matching videos.

Usage:
    mvwdl.py -q Tagesschau                      # List matches with their length
    mvwdl.py -q Tagesschau -d                   # Download matches once
    mvwdl.py -q "Tatort|Polizeiruf 110" -s      # Check every 60s and download
    mvwdl.py -f queries.txt -s --hours 1,2,3    # Only check between 1:00 and 3:59
    mvwdl.py -q Doku -d -x "Hörfassung|Trailer" # Skip titles containing these
"""

import argparse
import hashlib
import os
import sys
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set
from urllib.parse import quote_plus

import requests
from bs4 import BeautifulSoup
from filelock import FileLock
from slugify import slugify
from tqdm import tqdm

__version__ = "1.0.0"

FEED_URL = "https://mediathekviewweb.de/feed"
VIDEO_EXTENSION = ".mp4"
DEFAULT_HISTORY_FILE = "~/.mvwdl_history"
OFF_HOURS_SLEEP = 60


class Colors:
    """ANSI color codes for terminal output"""
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    RESET = '\033[0m'

    @classmethod
    def disable(cls):
        """Disable colors (e.g., for non-TTY output)"""
        cls.BLUE = cls.CYAN = cls.GREEN = cls.YELLOW = ''
        cls.RED = cls.BOLD = cls.DIM = cls.RESET = ''


# Disable colors if not a TTY
if not sys.stdout.isatty():
    Colors.disable()


class MvwdlError(Exception):
    """Base class for errors that abort the run."""


class ConfigError(MvwdlError):
    """Invalid or unusable configuration (query file, history file)."""


class ResolutionError(MvwdlError):
    """A home-relative path could not be resolved."""


class HistoryError(MvwdlError):
    """The download history could not be read or written."""


class DownloadError(MvwdlError):
    """A download batch could not be set up."""


def expand_home(path) -> Path:
    """Replace a leading ``~/`` with the current user's home directory."""
    path = str(path)
    if path.startswith("~/"):
        try:
            home = Path.home()
        except (RuntimeError, KeyError) as e:
            raise ResolutionError(f"Cannot determine home directory: {e}") from e
        return home / path[2:]
    return Path(path)


class DownloadHistory:
    """
    URLs of everything downloaded so far, in download order.

    The list is append-only and may contain duplicates; lookups go
    through a set index.
    """

    def __init__(self, entries: Iterable[str] = ()):
        self.entries: List[str] = []
        self._index: Set[str] = set()
        for entry in entries:
            self.add(entry)

    def add(self, url: str):
        self.entries.append(url)
        self._index.add(url)

    def __contains__(self, url) -> bool:
        return url in self._index

    def __len__(self) -> int:
        return len(self.entries)


def load_history(path) -> DownloadHistory:
    """
    Load the history file, one URL per line.

    A missing file is an empty history. A directory in its place is a
    configuration error.
    """
    history_path = expand_home(path)
    if not history_path.exists():
        return DownloadHistory()
    if history_path.is_dir():
        raise ConfigError(f"History file {history_path} is a directory")

    try:
        content = history_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise HistoryError(f"Cannot read history file {history_path}: {e}") from e

    return DownloadHistory(content.splitlines())


def history_lock_path(history_path: Path) -> Path:
    """Lock file in the temp directory, one per history file"""
    digest = hashlib.sha1(str(history_path.resolve()).encode("utf-8")).hexdigest()[:12]
    return Path(tempfile.gettempdir()) / f"mvwdl_{digest}.lock"


def append_history(path, identifier: str):
    """Append one URL to the history file, creating it if needed."""
    history_path = expand_home(path)
    try:
        with FileLock(str(history_lock_path(history_path))):
            with open(history_path, "a", encoding="utf-8") as f:
                f.write(identifier + "\n")
    except OSError as e:
        raise HistoryError(f"Cannot write history file {history_path}: {e}") from e


def build_query_url(phrase: str) -> str:
    return f"{FEED_URL}?query={quote_plus(phrase)}&everywhere=true&future=false"


def split_phrases(value: Optional[str]) -> List[str]:
    """Split a ``|``-delimited option value, dropping empty entries."""
    if not value:
        return []
    return [phrase.strip() for phrase in value.split("|") if phrase.strip()]


def read_query_file(path) -> List[str]:
    """Read search phrases from a file, one per non-empty line"""
    query_path = expand_home(path)
    try:
        lines = query_path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read query file {query_path}: {e}") from e
    return [line.strip() for line in lines if line.strip()]


def parse_hours(value: str) -> Set[int]:
    """Parse ``"9,10,22"`` into a set of hours. Empty means no restriction."""
    hours = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            hour = int(part)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid hour: {part!r}")
        if not 0 <= hour <= 23:
            raise argparse.ArgumentTypeError(f"hour out of range 0-23: {hour}")
        hours.add(hour)
    return hours


@dataclass(frozen=True)
class FeedItem:
    title: str
    duration: Optional[str] = None
    enclosures: tuple = ()


@dataclass(frozen=True)
class Job:
    """One video to download. Two jobs are the same if url, name and directory match."""
    url: str
    file_name: str
    output_dir: Path
    title: str = field(default="", compare=False)

    @property
    def target_path(self) -> Path:
        return self.output_dir / (self.file_name + VIDEO_EXTENSION)


class SeenJobs:
    """Jobs queued during this process, never forgotten."""

    def __init__(self):
        self.jobs: List[Job] = []
        self._index: Set[Job] = set()

    def add(self, job: Job):
        self.jobs.append(job)
        self._index.add(job)

    def __contains__(self, job) -> bool:
        return job in self._index

    def __len__(self) -> int:
        return len(self.jobs)


@dataclass
class DownloadResult:
    job: Job
    error: Optional[BaseException] = None

    @property
    def url(self) -> str:
        return self.job.url

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Config:
    """Settings for one run, built from the command line"""
    queries: List[str] = field(default_factory=list)
    exclusions: List[str] = field(default_factory=list)
    min_minutes: int = 20
    output_dir: str = "./output"
    download: bool = False
    server: bool = False
    interval: int = 60
    hours: Set[int] = field(default_factory=set)
    parallel: int = field(default_factory=lambda: os.cpu_count() or 1)
    tracking: bool = True
    history_file: str = DEFAULT_HISTORY_FILE
    timeout: int = 30
    retries: int = 2
    progress: bool = True

    @property
    def download_mode(self) -> bool:
        return self.download or self.server

    @property
    def feed_urls(self) -> List[str]:
        return [build_query_url(query) for query in self.queries]


@dataclass
class Context:
    """State carried from one cycle to the next."""
    config: Config
    seen: SeenJobs = field(default_factory=SeenJobs)
    history: DownloadHistory = field(default_factory=DownloadHistory)


def create_context(config: Config) -> Context:
    history = DownloadHistory()
    if config.download_mode and config.tracking:
        history = load_history(config.history_file)
    return Context(config=config, history=history)


def is_plain_duration(tag) -> bool:
    # <duration> only, not namespaced ones like <itunes:duration>
    return tag.name == 'duration' and tag.prefix is None


def fetch_feed(url: str, timeout: int = 30) -> List[FeedItem]:
    """
    Fetch and parse one search feed.

    Network and parse errors are not reported: the feed simply has no
    items this time.
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        soup = BeautifulSoup(response.content, 'xml')
    except Exception:
        return []

    items = []
    for item in soup.find_all('item'):
        title_tag = item.find('title', recursive=False)
        duration_tag = item.find(is_plain_duration, recursive=False)
        enclosures = tuple(
            enclosure['url']
            for enclosure in item.find_all('enclosure', recursive=False)
            if enclosure.get('url')
        )
        items.append(FeedItem(
            title=title_tag.get_text().strip() if title_tag else "",
            duration=duration_tag.get_text() if duration_tag else None,
            enclosures=enclosures,
        ))
    return items


def parse_duration(text: Optional[str]) -> Optional[int]:
    """Duration in whole seconds, or None if missing or malformed"""
    if text is None:
        return None
    try:
        seconds = int(text.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def collect_jobs(ctx: Context, feed_urls: Iterable[str]) -> List[Job]:
    """
    Fetch every feed and turn qualifying items into new jobs.

    In list mode qualifying items are only printed. In download mode
    excluded titles and anything seen before are skipped, and the rest
    are recorded in ``ctx.seen`` and returned.
    """
    config = ctx.config
    exclusions = [phrase.lower() for phrase in config.exclusions]
    output_dir = None
    jobs = []

    for url in feed_urls:
        for item in fetch_feed(url, config.timeout):
            seconds = parse_duration(item.duration)
            if seconds is None or not item.enclosures:
                continue

            minutes = seconds // 60
            if minutes < config.min_minutes:
                continue

            if not config.download_mode:
                print(f"{item.title} | {minutes} mins")
                continue

            title = item.title.lower()
            if any(phrase in title for phrase in exclusions):
                print(f"{Colors.DIM}Excluded: {item.title}{Colors.RESET}")
                continue

            if output_dir is None:
                output_dir = expand_home(config.output_dir)

            job = Job(
                url=item.enclosures[0],
                file_name=slugify(item.title),
                output_dir=output_dir,
                title=item.title,
            )

            if job in ctx.seen or (config.tracking and job.url in ctx.history):
                print(f"{Colors.DIM}Already downloaded: {item.title}{Colors.RESET}")
                continue

            ctx.seen.add(job)
            jobs.append(job)
            print(f"{Colors.CYAN}Downloading \"{item.title}\"{Colors.RESET}")

    return jobs


def truncate_for_display(text: str, max_width: int = 40) -> str:
    """Truncate text for display, keeping it readable"""
    if len(text) <= max_width:
        return text
    return text[:max_width - 3] + "..."


def download_file(url: str, output_path: Path, description: str, timeout: int = 30,
                  retries: int = 2, progress: bool = True):
    """
    Download a file with progress bar and retry logic.

    Downloads to a .part file first, then renames on success. Every attempt
    starts from scratch. The last error is raised once all attempts failed.
    """
    # Jobs may share a target path, so each URL gets its own part file
    url_hash = hashlib.sha1(url.encode("utf-8")).hexdigest()[:8]
    part_path = output_path.with_name(f"{output_path.name}.{url_hash}.part")

    for attempt in range(retries + 1):
        try:
            with requests.get(url, stream=True, timeout=timeout) as r:
                r.raise_for_status()
                total_size = int(r.headers.get('content-length', 0))

                with open(part_path, 'wb') as f, tqdm(
                    desc=truncate_for_display(description),
                    total=total_size or None,
                    unit='iB',
                    unit_scale=True,
                    unit_divisor=1024,
                    leave=False,
                    disable=not progress,
                ) as pbar:
                    for chunk in r.iter_content(chunk_size=8192):
                        pbar.update(f.write(chunk))

            part_path.replace(output_path)
            return

        except (requests.RequestException, OSError) as e:
            if attempt >= retries:
                part_path.unlink(missing_ok=True)
                raise

            # 5s, 10s, 20s, ...
            wait_time = 2 ** attempt * 5
            print(f"{Colors.YELLOW}  {description}: {e}, retrying in {wait_time}s...{Colors.RESET}")
            time.sleep(wait_time)


def prepare_output(jobs: List[Job]):
    """Create output directories and reject URLs that cannot be requested."""
    for output_dir in {job.output_dir for job in jobs}:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"Cannot create output directory {output_dir}: {e}") from e

    for job in jobs:
        try:
            requests.Request('GET', job.url).prepare()
        except (requests.RequestException, ValueError) as e:
            raise DownloadError(f"Invalid download URL {job.url}: {e}") from e


def download_batch(ctx: Context, jobs: List[Job]) -> List[DownloadResult]:
    """
    Download all jobs with at most ``parallel`` transfers at a time.

    Failed transfers are reported and skipped. Successful ones are added
    to the history (memory and file) when tracking is on. Returns once
    every transfer has finished.
    """
    config = ctx.config
    results = []
    if not jobs:
        return results

    prepare_output(jobs)

    with ThreadPoolExecutor(max_workers=max(1, config.parallel)) as executor:
        futures = {
            executor.submit(
                download_file,
                job.url,
                job.target_path,
                job.title or job.file_name,
                config.timeout,
                config.retries,
                config.progress,
            ): job
            for job in jobs
        }

        for future in as_completed(futures):
            job = futures[future]
            try:
                future.result()
            except Exception as e:
                print(f"{Colors.RED}✗ Failed: {job.title or job.url}: {e}{Colors.RESET}", file=sys.stderr)
                results.append(DownloadResult(job, error=e))
                continue

            print(f"{Colors.GREEN}✓ Downloaded {job.target_path.name}{Colors.RESET}")
            if config.tracking:
                ctx.history.add(job.url)
                append_history(config.history_file, job.url)
            results.append(DownloadResult(job))

    return results


def run_cycle(ctx: Context) -> List[DownloadResult]:
    """
    Run one fetch, filter and download cycle over all queries.

    Returns the download results (empty in list mode).
    """
    jobs = collect_jobs(ctx, ctx.config.feed_urls)
    if not ctx.config.download_mode or not jobs:
        return []

    results = download_batch(ctx, jobs)
    failed = sum(1 for result in results if not result.ok)
    print(f"{Colors.BOLD}{len(results) - failed} downloaded, {failed} failed{Colors.RESET}")
    return results


def in_operational_hours(hours: Set[int], now: datetime) -> bool:
    return not hours or now.hour in hours


def serve(ctx: Context, now: Callable[[], datetime] = datetime.now,
          sleep: Callable[[float], None] = time.sleep):
    """Run cycles forever, only during the configured hours."""
    config = ctx.config
    while True:
        if not in_operational_hours(config.hours, now()):
            sleep(OFF_HOURS_SLEEP)
            continue

        run_cycle(ctx)
        print(f"{Colors.DIM}Waiting {config.interval} seconds...{Colors.RESET}")
        sleep(config.interval)


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {number}")
    return number


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {number}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="mvwdl",
        description="Search MediathekViewWeb and download matching videos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -q Tagesschau                    List matches and their length
  %(prog)s -q Tagesschau -d                 Download matches to ./output
  %(prog)s -q "Tatort|Polizeiruf 110" -s    Keep checking every 60 seconds
  %(prog)s -f queries.txt -s --hours 1,2,3  Only check between 1:00 and 3:59
  %(prog)s -q Doku -d -x "Trailer|Hörfassung"  Skip titles containing these

Downloaded URLs are recorded in the history file so they are not
fetched again by later runs (disable with --no-tracking).
        """
    )

    parser.add_argument(
        "-q", "--query",
        metavar="PHRASES",
        help="Search phrase(s), separated by |"
    )

    parser.add_argument(
        "-f", "--query-file",
        metavar="FILE",
        help="File with one search phrase per line"
    )

    parser.add_argument(
        "-x", "--exclude",
        metavar="PHRASES",
        help="Skip titles containing any of these phrase(s), separated by | (case-insensitive)"
    )

    parser.add_argument(
        "-m", "--min",
        type=non_negative_int,
        default=20,
        metavar="MIN",
        help="Minimum video length in minutes (default: 20)"
    )

    parser.add_argument(
        "-o", "--output",
        default="./output",
        metavar="DIR",
        help="Output directory, created if missing (default: ./output)"
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "-d", "--download",
        action="store_true",
        help="Download all matches once and exit"
    )
    mode_group.add_argument(
        "-s", "--server",
        action="store_true",
        help="Keep running and download new matches every interval"
    )

    parser.add_argument(
        "-i", "--interval",
        type=non_negative_int,
        default=60,
        metavar="SEC",
        help="Seconds between checks in server mode (default: 60)"
    )

    parser.add_argument(
        "--hours",
        type=parse_hours,
        default=set(),
        metavar="H,H,...",
        help="Only check during these hours of the day, e.g. 1,2,3 (default: always)"
    )

    parser.add_argument(
        "-p", "--parallel",
        type=positive_int,
        default=os.cpu_count() or 1,
        metavar="N",
        help="Number of parallel downloads (default: number of CPUs)"
    )

    parser.add_argument(
        "--no-tracking",
        action="store_true",
        help="Neither read nor write the download history"
    )

    parser.add_argument(
        "--history-file",
        default=DEFAULT_HISTORY_FILE,
        metavar="FILE",
        help=f"Download history location (default: {DEFAULT_HISTORY_FILE})"
    )

    parser.add_argument(
        "--timeout",
        type=positive_int,
        default=30,
        metavar="SEC",
        help="Network timeout per request (default: 30)"
    )

    parser.add_argument(
        "--retries",
        type=non_negative_int,
        default=2,
        metavar="N",
        help="Retries per failed download (default: 2)"
    )

    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Hide download progress bars"
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)
    if not args.query and not args.query_file:
        parser.error("one of --query or --query-file is required")
    return args


def build_config(args: argparse.Namespace) -> Config:
    queries = split_phrases(args.query)
    if args.query_file:
        queries.extend(read_query_file(args.query_file))

    return Config(
        queries=queries,
        exclusions=split_phrases(args.exclude),
        min_minutes=args.min,
        output_dir=args.output,
        download=args.download,
        server=args.server,
        interval=args.interval,
        hours=args.hours,
        parallel=args.parallel,
        tracking=not args.no_tracking,
        history_file=args.history_file,
        timeout=args.timeout,
        retries=args.retries,
        progress=not args.no_progress,
    )


def print_banner(ctx: Context):
    config = ctx.config
    mode = "server" if config.server else "download"
    print(f"{Colors.BOLD}{Colors.CYAN}mvwdl{Colors.RESET} - MediathekViewWeb Downloader")
    print(f"{Colors.BOLD}Mode:{Colors.RESET}       {mode}")
    print(f"{Colors.BOLD}Queries:{Colors.RESET}    {', '.join(config.queries)}")
    print(f"{Colors.BOLD}Output:{Colors.RESET}     {config.output_dir}")
    if config.exclusions:
        print(f"{Colors.DIM}Excluding:  {', '.join(config.exclusions)}{Colors.RESET}")
    if config.server:
        hours = ", ".join(str(h) for h in sorted(config.hours)) or "always"
        print(f"{Colors.DIM}Interval:   {config.interval}s, hours: {hours}{Colors.RESET}")
    if config.tracking:
        print(f"{Colors.DIM}History:    {config.history_file} ({len(ctx.history)} entries){Colors.RESET}")
    print()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # Handle --no-color
    if args.no_color:
        Colors.disable()

    try:
        config = build_config(args)
        ctx = create_context(config)

        if not config.download_mode:
            run_cycle(ctx)
        elif config.server:
            print_banner(ctx)
            print(f"{Colors.DIM}Running in server mode (Ctrl+C to stop){Colors.RESET}")
            print()
            serve(ctx)
        else:
            print_banner(ctx)
            run_cycle(ctx)

    except MvwdlError as e:
        print(f"{Colors.RED}Error: {e}{Colors.RESET}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"\n\n{Colors.YELLOW}Shutting down...{Colors.RESET}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
