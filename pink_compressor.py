import os
import subprocess
import sys
import shutil
import logging
import concurrent.futures
import queue
import threading
from pathlib import Path
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol, Set, Tuple
import click
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeRemainingColumn
from rich.table import Table
from PIL import Image

__version__ = "1.0.0"

console = Console()

# Configure logging
logger = logging.getLogger("pink_compressor")

BANNER = r"""
        _       _
  _ __ (_)_ __ | | __
 | '_ \| | '_ \| |/ /
 | |_) | | | | |   <    compressor
 | .__/|_|_| |_|_|\_\   batch images -> webp
 |_|
"""

# =============================================================================
# Constants and Enums
# =============================================================================

class EncoderMode(Enum):
    """Argument layouts understood by the external encoder."""
    QSCALE = "qscale"      # -qscale <q>
    LIBWEBP = "libwebp"    # -c:v libwebp -quality <q>

# Supported image extensions
IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif'}

# Only scanned with --avif
AVIF_EXTENSIONS = {'.avif'}

OUTPUT_DIR_NAME = "compressed"
OUTPUT_SUFFIX = ".webp"

DEFAULT_QUALITY = 80
MIN_QUALITY = 1
MAX_QUALITY = 100

AFFIRMATIVE_ANSWERS = {"y", "yes", "s", "sim"}

# Lines of encoder stderr kept in an error message
ERROR_TAIL_LINES = 5

# =============================================================================
# Errors
# =============================================================================

class CompressorError(Exception):
    """Base class for every error raised by the compressor."""


class ConfigurationError(CompressorError):
    """Invalid quality, working directory or missing encoder. Fatal."""


class NoImagesError(CompressorError):
    """The working directory holds no eligible images. Fatal."""


class EncodeError(CompressorError):
    """A single encoder invocation failed. Absorbed per job."""


class QueueClosedError(CompressorError):
    """A job was added after the queue was closed."""

# =============================================================================
# Configuration and Pre-flight Checks
# =============================================================================

@dataclass
class CompressorConfig:
    """Settings for one compression run."""
    directory: Path
    quality: int = DEFAULT_QUALITY
    skip_preview: bool = False
    in_place: bool = False
    workers: int = 0  # 0 = one per CPU
    encoder_binary: str = "ffmpeg"
    mode: EncoderMode = EncoderMode.QSCALE
    include_avif: bool = False
    output_dir_name: str = OUTPUT_DIR_NAME

    @property
    def output_path(self) -> Path:
        if self.in_place:
            return self.directory
        return self.directory / self.output_dir_name

    @property
    def extensions(self) -> Set[str]:
        if self.include_avif:
            return IMAGE_EXTENSIONS | AVIF_EXTENSIONS
        return set(IMAGE_EXTENSIONS)


def check_command_exists(cmd: str) -> bool:
    """Check if a command exists in PATH (or is an executable path)."""
    return shutil.which(cmd) is not None

def validate_image_quality(quality: int) -> Tuple[bool, str]:
    """Validate image quality value."""
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        return False, f"Image quality must be between {MIN_QUALITY} and {MAX_QUALITY} (got {quality})"
    return True, ""

def validate_directory(path: Path) -> Tuple[bool, str]:
    """Validate the working directory."""
    if not path.exists():
        return False, f"Directory not found: {path}"
    if not path.is_dir():
        return False, f"Not a directory: {path}"
    return True, ""

def resolve_pool_width(requested: int = 0) -> int:
    """Number of workers: the requested count, or one per CPU."""
    if requested > 0:
        return requested
    return max(1, os.cpu_count() or 1)

# =============================================================================
# External Encoder
# =============================================================================

def build_ffmpeg_command(
    binary: str,
    source: Path,
    destination: Path,
    quality: int,
    mode: EncoderMode = EncoderMode.QSCALE
) -> List[str]:
    """Build the encoder command for one image."""
    cmd = [binary, "-y", "-i", str(source)]

    if mode == EncoderMode.LIBWEBP:
        cmd.extend(["-c:v", "libwebp", "-quality", str(quality)])
    else:
        cmd.extend(["-qscale", str(quality)])

    cmd.append(str(destination))
    return cmd

def trim_diagnostic(text: Optional[str], max_lines: int = ERROR_TAIL_LINES) -> str:
    """Keep the last non-empty lines of an encoder's stderr."""
    if not text:
        return ""
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return " | ".join(lines[-max_lines:])


class Encoder(Protocol):
    """Anything able to turn one source image into a WebP destination."""

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        ...


class FFmpegEncoder:
    """Runs one ffmpeg process per image."""

    def __init__(self, binary: str = "ffmpeg", mode: EncoderMode = EncoderMode.QSCALE):
        self.binary = binary
        self.mode = mode

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        """
        Convert source into destination, overwriting it.
        Raises EncodeError with the trimmed stderr if ffmpeg fails or cannot start.
        """
        cmd = build_ffmpeg_command(self.binary, source, destination, quality, self.mode)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        except OSError as e:
            raise EncodeError(f"Could not start {self.binary}: {e}") from e

        if result.returncode != 0:
            detail = trim_diagnostic(result.stderr)
            message = f"{self.binary} exited with status {result.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise EncodeError(message)


class InvocationSerializer:
    """
    Lets at most one encoder invocation run at a time, whatever the number of workers.
    The lock is released on every exit path, including EncodeError.
    """

    def __init__(self, encoder: Encoder, lock: Optional[threading.Lock] = None):
        self._encoder = encoder
        self._lock = lock if lock is not None else threading.Lock()

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        with self._lock:
            self._encoder.encode(source, destination, quality)

# =============================================================================
# Jobs and Outcomes
# =============================================================================

@dataclass(frozen=True)
class Job:
    """One source-to-destination conversion."""
    source: Path
    destination: Path


@dataclass(frozen=True)
class ConversionOutcome:
    """Result of running one Job. Sizes are None when they could not be read."""
    source: Path
    destination: Path
    original_size: Optional[int]
    converted_size: Optional[int]
    success: bool
    error: Optional[str] = None

    @property
    def reduction(self) -> Optional[float]:
        return reduction_percent(self.original_size, self.converted_size)


def reduction_percent(original: Optional[int], converted: Optional[int]) -> Optional[float]:
    """(original - converted) / original * 100, or None if it cannot be computed."""
    if not original or converted is None:
        return None
    return (original - converted) / original * 100

def file_size(path: Path) -> Optional[int]:
    """Size of a file in bytes, None if it cannot be read."""
    try:
        return path.stat().st_size
    except OSError:
        return None

# =============================================================================
# Statistics Tracking
# =============================================================================

@dataclass
class ProcessingStats:
    """Track processing statistics."""
    total: int = 0
    converted: int = 0
    failed: int = 0
    bytes_before: int = 0
    bytes_after: int = 0

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_total(self, count: int):
        with self.lock:
            self.total += count

    def add_success(self, original: Optional[int], converted: Optional[int]):
        with self.lock:
            self.converted += 1
            self.bytes_before += original or 0
            self.bytes_after += converted or 0

    def add_failed(self):
        with self.lock:
            self.failed += 1

    @property
    def bytes_saved(self) -> int:
        return self.bytes_before - self.bytes_after

    @property
    def reduction(self) -> Optional[float]:
        return reduction_percent(self.bytes_before, self.bytes_after)


class ResultAggregator:
    """
    Folds outcomes into ProcessingStats. Called from the worker threads.

    In in-place mode the source file is removed once its conversion succeeded;
    a failed conversion never touches the source.
    """

    def __init__(
        self,
        stats: ProcessingStats,
        in_place: bool = False,
        reporter: Optional[Callable[[ConversionOutcome], None]] = None
    ):
        self.stats = stats
        self.in_place = in_place
        self.reporter = reporter

    def record(self, outcome: ConversionOutcome):
        if outcome.success:
            if self.in_place:
                self._delete_source(outcome)
            self.stats.add_success(outcome.original_size, outcome.converted_size)
        else:
            self.stats.add_failed()

        if self.reporter:
            self.reporter(outcome)

    def _delete_source(self, outcome: ConversionOutcome):
        if outcome.source == outcome.destination:
            return
        try:
            outcome.source.unlink()
            logger.debug(f"Deleted source {outcome.source}")
        except OSError as e:
            logger.warning(f"Failed to delete source {outcome.source}: {e}")

# =============================================================================
# Job Queue
# =============================================================================

_CLOSED = object()


class JobQueue:
    """
    Bounded job channel with close-then-drain semantics.

    The producer puts every job and then calls close(). claim() blocks while the
    queue is open and empty, and returns None once it is closed and drained.
    """

    def __init__(self, maxsize: int = 0):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._put_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, job: Job):
        with self._put_lock:
            if self._closed.is_set():
                raise QueueClosedError("Cannot add jobs to a closed queue")
            self._queue.put(job)

    def close(self):
        with self._put_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._queue.put(_CLOSED)

    def claim(self) -> Optional[Job]:
        item = self._queue.get()
        if item is _CLOSED:
            # Leave the marker for the other workers
            self._queue.put(_CLOSED)
            return None
        return item

# =============================================================================
# Worker Pool
# =============================================================================

def process_job(job: Job, encoder: Encoder, quality: int) -> ConversionOutcome:
    """Stat source, encode, stat destination. Never raises."""
    original_size = file_size(job.source)

    try:
        encoder.encode(job.source, job.destination, quality)
    except EncodeError as e:
        return ConversionOutcome(job.source, job.destination, original_size, None, False, str(e))
    except Exception as e:
        logger.exception(f"Unexpected error converting {job.source}")
        return ConversionOutcome(job.source, job.destination, original_size, None, False, f"Unexpected error: {e}")

    # Only read after the encoder reported success for this file
    converted_size = file_size(job.destination)
    return ConversionOutcome(job.source, job.destination, original_size, converted_size, True)

def worker_loop(job_queue: JobQueue, encoder: Encoder, quality: int, aggregator: ResultAggregator) -> int:
    """Claim jobs until the queue is closed and drained. Returns the number handled."""
    handled = 0
    while True:
        job = job_queue.claim()
        if job is None:
            logger.debug(f"{threading.current_thread().name} drained after {handled} jobs")
            return handled

        outcome = process_job(job, encoder, quality)
        try:
            aggregator.record(outcome)
        except Exception:
            logger.exception(f"Failed to record result for {job.source}")
        handled += 1


class WorkerPool:
    """Fixed number of threads sharing one JobQueue."""

    def __init__(self, encoder: Encoder, quality: int, aggregator: ResultAggregator, width: int = 0):
        self.encoder = encoder
        self.quality = quality
        self.aggregator = aggregator
        self.width = resolve_pool_width(width)

    def run(self, jobs: Iterable[Job]) -> int:
        """
        Dispatch every job and wait until all workers have returned.
        Returns the number of jobs handled.
        """
        jobs = list(jobs)
        # Room for every job plus the close marker, so the producer never blocks
        job_queue = JobQueue(maxsize=len(jobs) + 1)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.width,
            thread_name_prefix="ImageWorker"
        ) as executor:
            futures = [
                executor.submit(worker_loop, job_queue, self.encoder, self.quality, self.aggregator)
                for _ in range(self.width)
            ]
            try:
                for job in jobs:
                    job_queue.put(job)
            finally:
                job_queue.close()

            concurrent.futures.wait(futures)

        return sum(future.result() for future in futures)

# =============================================================================
# Discovery
# =============================================================================

def scan_images(directory: Path, extensions: Iterable[str]) -> List[Path]:
    """
    List eligible images directly inside directory, sorted by name.
    Hidden files and subdirectories (including the output one) are skipped.
    """
    extensions = {ext.lower() for ext in extensions}
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise ConfigurationError(f"Cannot scan {directory}: {e}") from e

    images = []
    for entry in entries:
        if entry.name.startswith('.'):
            continue
        if not entry.is_file():
            continue
        if entry.suffix.lower() in extensions:
            images.append(entry)
    return images

def destination_for(source: Path, output_path: Path) -> Path:
    return output_path / (source.stem + OUTPUT_SUFFIX)

def build_jobs(images: Iterable[Path], output_path: Path) -> List[Job]:
    """One job per image. A second image mapping to an already used destination is dropped."""
    jobs = []
    claimed = {}
    for image in images:
        destination = destination_for(image, output_path)
        if destination in claimed:
            logger.warning(f"Skipping {image.name}: {destination.name} is already produced from {claimed[destination].name}")
            continue
        claimed[destination] = image
        jobs.append(Job(image, destination))
    return jobs

# =============================================================================
# Console Output
# =============================================================================

def format_bytes(size: int) -> str:
    """Return human readable file size string."""
    power = 2**10
    n = 0
    power_labels = {0: '', 1: 'K', 2: 'M', 3: 'G', 4: 'T'}
    while size > power and n < 4:
        size /= power
        n += 1
    return f"{size:.2f} {power_labels[n]}B"

def format_size(size: Optional[int]) -> str:
    return format_bytes(size) if size is not None else "?"

def format_reduction(percent: Optional[float]) -> str:
    return f"{percent:.1f}%" if percent is not None else "n/a"

def read_dimensions(path: Path) -> Optional[Tuple[int, int]]:
    """Width and height from the image header, None if Pillow cannot identify it."""
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, Image.DecompressionBombError):
        return None

def describe_outcome(outcome: ConversionOutcome) -> str:
    """One console line (rich markup) for a finished job."""
    if not outcome.success:
        return f"[bold red]✗ {escape(outcome.source.name)}: {escape(outcome.error or 'unknown error')}[/bold red]"

    return (
        f"[bold green]✓[/bold green] {escape(outcome.source.name)} ({format_size(outcome.original_size)})"
        f" → {escape(outcome.destination.name)} ({format_size(outcome.converted_size)})"
        f" [dim]\\[{format_reduction(outcome.reduction)} reduction][/dim]"
    )


class ProgressReporter:
    """Prints a line per outcome and advances the progress bar."""

    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id

    def __call__(self, outcome: ConversionOutcome):
        self.progress.console.print(describe_outcome(outcome), soft_wrap=True)
        self.progress.advance(self.task_id, advance=1)
        if outcome.success:
            logger.debug(f"Converted {outcome.source} -> {outcome.destination}")
        else:
            logger.debug(f"Failed {outcome.source}: {outcome.error}")


def show_preview(jobs: List[Job], output_path: Path, out: Console = console):
    """Print the files about to be converted."""
    table = Table(title="Preview - files to convert")
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Dimensions", justify="right")
    table.add_column("Output")

    total_size = 0
    for job in jobs:
        size = file_size(job.source)
        total_size += size or 0
        dimensions = read_dimensions(job.source)
        table.add_row(
            escape(job.source.name),
            format_size(size),
            f"{dimensions[0]}x{dimensions[1]}" if dimensions else "?",
            escape(job.destination.name)
        )

    out.print(table)
    out.print(f"[dim]Output: {escape(str(output_path))}[/dim]")
    out.print(f"[dim]Total size: {format_bytes(total_size)}[/dim]")

def confirm_execution(out: Console = console) -> bool:
    """Only an explicit yes proceeds. Empty input and EOF cancel."""
    try:
        response = out.input("\nContinue? (y/N): ")
    except EOFError:
        return False
    return response.strip().lower() in AFFIRMATIVE_ANSWERS

def print_summary_report(stats: ProcessingStats, out: Console = console):
    """Print final processing summary."""
    out.print("\n" + "=" * 60)
    out.print("[bold cyan]Processing Summary[/bold cyan]")
    out.print("=" * 60)

    table = Table(show_header=False, box=None)
    table.add_column("Label", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Total Files:", str(stats.total))
    table.add_row("Converted:", f"[green]{stats.converted}[/green]")
    table.add_row("Failed:", f"[red]{stats.failed}[/red]" if stats.failed else "0")

    if stats.converted > 0:
        table.add_row("", "")
        table.add_row("Original Size:", format_bytes(stats.bytes_before))
        table.add_row("Converted Size:", format_bytes(stats.bytes_after))
        reduction = format_reduction(stats.reduction)
        if stats.bytes_saved >= 0:
            table.add_row("Space Saved:", f"[green]{format_bytes(stats.bytes_saved)} ({reduction})[/green]")
        else:
            table.add_row("Space Change:", f"[red]+{format_bytes(abs(stats.bytes_saved))} ({reduction})[/red]")

    out.print(table)
    out.print("=" * 60 + "\n")

# =============================================================================
# Orchestration
# =============================================================================

def run_conversion(
    config: CompressorConfig,
    encoder: Optional[Encoder] = None,
    out: Console = console,
    confirm: Optional[Callable[[], bool]] = None
) -> Optional[ProcessingStats]:
    """
    Validate, discover, preview and convert.

    Returns the final stats, or None when the user cancelled at the prompt.
    Raises ConfigurationError / NoImagesError before touching the filesystem.
    Per-file failures are counted in the stats, never raised.
    """
    valid, msg = validate_image_quality(config.quality)
    if not valid:
        raise ConfigurationError(msg)

    valid, msg = validate_directory(config.directory)
    if not valid:
        raise ConfigurationError(msg)

    if encoder is None:
        if not check_command_exists(config.encoder_binary):
            raise ConfigurationError(f"{config.encoder_binary} not found in PATH. Please install FFmpeg.")
        encoder = FFmpegEncoder(config.encoder_binary, config.mode)

    images = scan_images(config.directory, config.extensions)
    if not images:
        exts = ", ".join(sorted(ext.lstrip('.').upper() for ext in config.extensions))
        raise NoImagesError(f"No images found ({exts}) in {config.directory}")

    output_path = config.output_path
    jobs = build_jobs(images, output_path)

    out.print(f"[bold green]Found {len(jobs)} images to process.[/bold green]")
    out.print(f"[dim]Quality: {config.quality}%[/dim]")
    if config.in_place:
        out.print("[bold red]WARNING: Source files will be DELETED after successful conversion![/bold red]")

    if not config.skip_preview:
        show_preview(jobs, output_path, out)
        confirmed = confirm() if confirm is not None else confirm_execution(out)
        if not confirmed:
            out.print("[yellow]Operation cancelled by user[/yellow]")
            return None

    if not config.in_place:
        try:
            output_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create output directory {output_path}: {e}") from e

    stats = ProcessingStats()
    stats.add_total(len(jobs))
    serializer = InvocationSerializer(encoder)
    width = resolve_pool_width(config.workers)
    logger.debug(f"Dispatching {len(jobs)} jobs to {width} workers")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeRemainingColumn(),
        console=out
    ) as progress:
        total_task_id = progress.add_task("[bold white]Files Processed", total=len(jobs))
        aggregator = ResultAggregator(
            stats,
            in_place=config.in_place,
            reporter=ProgressReporter(progress, total_task_id)
        )
        WorkerPool(serializer, config.quality, aggregator, width).run(jobs)

    return stats

# =============================================================================
# Main Entry Point
# =============================================================================

def setup_logging(quiet: bool = False, verbose: bool = False, log_file: Optional[str] = None):
    log_level = logging.WARNING if quiet else (logging.DEBUG if verbose else logging.INFO)
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')
    logger.setLevel(log_level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)


@click.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".", required=False)
@click.option("--quality", "-q", default=DEFAULT_QUALITY, type=click.IntRange(MIN_QUALITY, MAX_QUALITY),
              help=f"Compression quality ({MIN_QUALITY}-{MAX_QUALITY}). Default {DEFAULT_QUALITY}.")
@click.option("--skip", "-s", is_flag=True, help="Run without preview and confirmation.")
@click.option("--in-place", "-r", is_flag=True, help="Replace originals: write next to them and delete the source on success.")
@click.option("--workers", "-w", default=0, type=click.IntRange(min=0), help="Number of workers (0 = one per CPU).")
@click.option("--encoder", "encoder_binary", default="ffmpeg", help="Encoder binary name or path.")
@click.option("--mode", type=click.Choice([m.value for m in EncoderMode], case_sensitive=False),
              default=EncoderMode.QSCALE.value, help="Encoder argument layout (default: qscale).")
@click.option("--avif", is_flag=True, help="Also convert .avif files.")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write logs to file.")
@click.option("--quiet", is_flag=True, help="Reduce output verbosity.")
@click.option("--verbose", "-v", is_flag=True, help="Increase output verbosity.")
@click.option("--no-banner", is_flag=True, help="Do not print the banner.")
@click.version_option(__version__, prog_name="pink-compressor")
def main(directory, quality, skip, in_place, workers, encoder_binary, mode, avif,
         log_file, quiet, verbose, no_banner):
    """
    Batch convert the PNG, JPEG and GIF images of DIRECTORY to WebP.

    Outputs go to DIRECTORY/compressed unless --in-place is given.
    """
    setup_logging(quiet, verbose, log_file)

    if not quiet and not no_banner:
        console.print(BANNER, style="bold magenta", highlight=False)

    config = CompressorConfig(
        directory=directory.resolve(),
        quality=quality,
        skip_preview=skip,
        in_place=in_place,
        workers=workers,
        encoder_binary=encoder_binary,
        mode=EncoderMode(mode.lower()),
        include_avif=avif
    )

    try:
        stats = run_conversion(config)
    except CompressorError as e:
        logger.debug(f"Aborting: {e}")
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]", soft_wrap=True)
        sys.exit(1)

    if stats is None:
        return

    print_summary_report(stats)


if __name__ == "__main__":
    main()
