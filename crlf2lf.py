#!/usr/bin/env python3
"""
crlf2lf

A Python script to convert CRLF line endings to LF in the text files of a
directory tree. Binary files are detected and left alone, and every rewrite
replaces the original atomically.
"""

import argparse
import contextlib
import enum
import logging
import os
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from typing import ContextManager, Dict, FrozenSet, Iterable, List, Optional

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

# Define version
__version__ = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("crlf2lf")

# Number of leading bytes inspected by the binary heuristic
SAMPLE_SIZE = 8192
# Maximum share of non-text bytes a text file may contain
BINARY_THRESHOLD = 0.30
HIDDEN_PREFIX = "."

CR = b"\r"
LF = b"\n"
CRLF = b"\r\n"

# BEL, BS, TAB, LF, FF, CR, ESC and everything from space upwards except DEL.
# Bytes >= 0x80 count as text so UTF-8 content is not mistaken for binary.
TEXT_CHARACTERS = bytes(
    bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7F})
)


class Crlf2LfError(Exception):
    """Base class for errors raised by crlf2lf."""


class FatalError(Crlf2LfError):
    """The run cannot proceed, e.g. the root directory is missing or unreadable."""


class FileKind(enum.Enum):
    TEXT = "text"
    BINARY = "binary"


class Action(enum.Enum):
    """What happened to a single visited file."""

    CONVERTED = "converted"
    SKIPPED_BINARY = "skipped (binary)"
    SKIPPED_HIDDEN = "skipped (hidden)"
    SKIPPED_EXTENSION = "skipped (extension)"
    NO_CHANGE = "no change"
    ERROR = "error"


@dataclass(frozen=True)
class FileOutcome:
    """The result of visiting one regular file.

    ``reason`` is only set for ``Action.ERROR``. ``size`` and ``bytes_saved``
    are only non-zero for ``Action.CONVERTED`` (including would-be
    conversions in dry-run mode).
    """

    path: str
    action: Action
    reason: Optional[str] = None
    size: int = 0
    bytes_saved: int = 0


@dataclass
class RunSummary:
    """Per-action counts and byte totals, accumulated during a walk."""

    dry_run: bool = False
    counts: Dict[Action, int] = field(
        default_factory=lambda: {action: 0 for action in Action}
    )
    bytes_converted: int = 0
    bytes_saved: int = 0
    outcomes: List[FileOutcome] = field(default_factory=list)
    elapsed: Optional[float] = None
    started: float = field(default_factory=time.monotonic, repr=False)

    def record(self, outcome: FileOutcome) -> None:
        self.outcomes.append(outcome)
        self.counts[outcome.action] += 1
        if outcome.action is Action.CONVERTED:
            self.bytes_converted += outcome.size
            self.bytes_saved += outcome.bytes_saved

    def finalize(self) -> "RunSummary":
        self.elapsed = time.monotonic() - self.started
        return self

    def count(self, action: Action) -> int:
        return self.counts[action]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def errors(self) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.action is Action.ERROR]


def parse_extensions(values: Iterable[str]) -> FrozenSet[str]:
    """
    Normalize an extension allow-list.

    Entries may be comma separated, are matched case-insensitively and may be
    given with or without a leading dot: ``["RS", ".py,md"]`` becomes
    ``{"rs", "py", "md"}``.
    """
    extensions = set()
    for value in values:
        for item in value.split(","):
            item = item.strip().lstrip(".").lower()
            if item:
                extensions.add(item)
    return frozenset(extensions)


@dataclass(frozen=True)
class Config:
    """Options for a single run. An empty extension list matches no file."""

    root: str = "."
    recursive: bool = True
    dry_run: bool = False
    skip_hidden: bool = True
    include_extensions: Optional[FrozenSet[str]] = None
    convert_lone_cr: bool = False
    show_progress: bool = False

    def __post_init__(self) -> None:
        extensions = self.include_extensions
        if extensions is not None:
            if isinstance(extensions, str):
                extensions = (extensions,)
            object.__setattr__(
                self, "include_extensions", parse_extensions(extensions)
            )


def classify(sample: bytes) -> FileKind:
    """
    Decide whether a byte sample looks like text or binary data.

    Only the first SAMPLE_SIZE bytes are inspected. A NUL byte, or more than
    BINARY_THRESHOLD non-text bytes, makes the sample binary. An empty sample
    is text.
    """
    sample = sample[:SAMPLE_SIZE]
    if not sample:
        return FileKind.TEXT

    if b"\x00" in sample:
        return FileKind.BINARY

    non_text: bytes = sample.translate(None, TEXT_CHARACTERS)
    if float(len(non_text)) / len(sample) > BINARY_THRESHOLD:
        return FileKind.BINARY
    return FileKind.TEXT


def contains_crlf(data: bytes) -> bool:
    return CRLF in data


def needs_rewrite(data: bytes, convert_lone_cr: bool = False) -> bool:
    if convert_lone_cr:
        return CR in data
    return contains_crlf(data)


def is_hidden(name: str) -> bool:
    return name.startswith(HIDDEN_PREFIX)


def extension_allowed(path: str, extensions: Optional[FrozenSet[str]]) -> bool:
    """
    Check a path against an extension allow-list.

    Only the last suffix counts and names without one (including dotfiles
    such as ``.bashrc``) never match. With no allow-list everything matches;
    an empty allow-list matches nothing.
    """
    if extensions is None:
        return True
    ext: str = os.path.splitext(os.path.basename(path))[1][1:].lower()
    return bool(ext) and ext in extensions


def rewrite(data: bytes, convert_lone_cr: bool = False) -> bytes:
    """
    Replace every CRLF in ``data`` with LF.

    All other bytes are kept in order. A CR that is not followed by LF is
    left alone unless ``convert_lone_cr`` is set.
    """
    converted = data.replace(CRLF, LF)
    if convert_lone_cr:
        converted = converted.replace(CR, LF)
    return converted


def atomic_write(path: str, data: bytes) -> None:
    """
    Replace the contents of ``path`` with ``data`` without partial writes.

    The data goes to a temporary file in the same directory, which is synced,
    given the original's permission bits and renamed over the original. On
    failure the temporary file is removed, the original is untouched and the
    OSError propagates.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, temp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        shutil.copymode(path, temp_path)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.remove(temp_path)
        except OSError as e:
            logger.warning("Could not remove temporary file %s: %s", temp_path, e)
        raise


def process_file(path: str, config: Config) -> FileOutcome:
    """Filter, classify and (unless dry-running) convert one regular file."""
    if not extension_allowed(path, config.include_extensions):
        logger.debug("Skipping file outside extension list: %s", path)
        return FileOutcome(path, Action.SKIPPED_EXTENSION)

    try:
        with open(path, "rb") as f:
            sample: bytes = f.read(SAMPLE_SIZE)
            if classify(sample) is FileKind.BINARY:
                logger.debug("Skipping binary file: %s", path)
                return FileOutcome(path, Action.SKIPPED_BINARY)
            data: bytes = sample + f.read()
    except OSError as e:
        logger.error("Error reading %s: %s", path, e)
        return FileOutcome(path, Action.ERROR, reason=f"read failed: {e}")

    # A NUL anywhere in the file marks it binary, not just in the sample
    if b"\x00" in data:
        logger.debug("Skipping binary file: %s", path)
        return FileOutcome(path, Action.SKIPPED_BINARY)

    if not needs_rewrite(data, config.convert_lone_cr):
        logger.debug("No changes needed for file: %s", path)
        return FileOutcome(path, Action.NO_CHANGE)

    converted = rewrite(data, config.convert_lone_cr)
    bytes_saved = len(data) - len(converted)

    if config.dry_run:
        logger.info(
            "[DRY RUN] Would convert: %s (%d bytes saved)", path, bytes_saved
        )
    else:
        try:
            atomic_write(path, converted)
        except OSError as e:
            logger.error("Error writing to %s: %s", path, e)
            return FileOutcome(path, Action.ERROR, reason=f"write failed: {e}")
        logger.debug("Converted: %s (%d bytes saved)", path, bytes_saved)

    return FileOutcome(
        path, Action.CONVERTED, size=len(data), bytes_saved=bytes_saved
    )


def _list_directory(path: str) -> List[os.DirEntry]:
    # Sorted so that repeated runs over the same tree report in the same order
    with os.scandir(path) as it:
        return sorted(it, key=lambda entry: entry.name)


def _redirect_logging(enabled: bool) -> ContextManager:
    if enabled:
        return logging_redirect_tqdm()
    return contextlib.nullcontext()


class _Walker:
    """Depth-first traversal that owns the RunSummary for one run."""

    def __init__(
        self, config: Config, progress: tqdm, summary: Optional[RunSummary] = None
    ) -> None:
        self.config = config
        self.progress = progress
        if summary is None:
            summary = RunSummary(dry_run=config.dry_run)
        self.summary = summary

    def record(self, outcome: FileOutcome) -> None:
        self.summary.record(outcome)
        self.progress.update(1)

    def walk_entries(self, entries: List[os.DirEntry]) -> None:
        for entry in entries:
            try:
                if entry.is_symlink():
                    logger.debug("Skipping symbolic link: %s", entry.path)
                    continue
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)
            except OSError as e:
                logger.error("Error inspecting %s: %s", entry.path, e)
                self.record(FileOutcome(entry.path, Action.ERROR, reason=str(e)))
                continue

            hidden = self.config.skip_hidden and is_hidden(entry.name)
            if is_dir:
                self.walk_directory(entry.path, hidden)
            elif is_file:
                if hidden:
                    logger.debug("Skipping hidden file: %s", entry.path)
                    self.record(FileOutcome(entry.path, Action.SKIPPED_HIDDEN))
                else:
                    self.record(process_file(entry.path, self.config))
            else:
                logger.debug("Skipping special file: %s", entry.path)

    def walk_directory(self, path: str, hidden: bool) -> None:
        if not self.config.recursive:
            logger.debug("Not descending into directory: %s", path)
            return
        if hidden:
            logger.debug("Skipping hidden directory: %s", path)
            self.skip_hidden_tree(path)
            return

        try:
            children = _list_directory(path)
        except OSError as e:
            logger.error("Error reading directory %s: %s", path, e)
            self.record(
                FileOutcome(path, Action.ERROR, reason=f"listing failed: {e}")
            )
            return
        self.walk_entries(children)

    def skip_hidden_tree(self, path: str) -> None:
        """Report every regular file under a hidden directory without opening it."""

        def on_error(e: OSError) -> None:
            logger.error("Error reading directory %s: %s", e.filename, e)
            self.record(
                FileOutcome(
                    str(e.filename), Action.ERROR, reason=f"listing failed: {e}"
                )
            )

        for root, dirs, files in os.walk(path, onerror=on_error):
            dirs.sort()
            for name in sorted(files):
                file_path = os.path.join(root, name)
                if os.path.islink(file_path) or not os.path.isfile(file_path):
                    continue
                self.record(FileOutcome(file_path, Action.SKIPPED_HIDDEN))


def check_root(root: str) -> None:
    """Raise FatalError unless ``root`` is an existing directory."""
    if not os.path.exists(root):
        raise FatalError(f"Path does not exist: {root}")
    if not os.path.isdir(root):
        raise FatalError(f"Path is not a directory: {root}")


def walk(config: Config, summary: Optional[RunSummary] = None) -> RunSummary:
    """
    Convert every eligible file under ``config.root``.

    Outcomes are added to ``summary`` when one is given, so several roots can
    share one report. Raises FatalError if the root is missing, not a
    directory or cannot be listed. Problems with individual files are
    recorded as ``Action.ERROR`` outcomes and never abort the walk.
    """
    root = config.root
    check_root(root)
    try:
        entries = _list_directory(root)
    except OSError as e:
        raise FatalError(f"Cannot read directory {root}: {e}") from e

    with tqdm(
        desc="Converting files", unit="file", disable=not config.show_progress
    ) as progress, _redirect_logging(config.show_progress):
        walker = _Walker(config, progress, summary)
        walker.walk_entries(entries)

    return walker.summary.finalize()


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.2f} seconds"
    if seconds < 3600:
        minutes = int(seconds // 60)
        plural = "s" if minutes != 1 else ""
        return f"{minutes} minute{plural} {seconds % 60:.2f} seconds"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return (
        f"{hours} hour{'s' if hours != 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} "
        f"{seconds % 60:.2f} seconds"
    )


def format_summary(summary: RunSummary) -> List[str]:
    """Render a RunSummary as human-readable lines."""
    title = "Summary (dry run)" if summary.dry_run else "Summary"
    lines = [f"{title}: {summary.total} files visited"]
    for action in Action:
        label = action.value
        if action is Action.CONVERTED and summary.dry_run:
            label = "would convert"
        lines.append(f"  {label}: {summary.count(action)}")

    verb = "Would convert" if summary.dry_run else "Converted"
    lines.append(
        f"{verb} {summary.bytes_converted} bytes ({summary.bytes_saved} bytes saved)"
    )
    for outcome in summary.errors:
        lines.append(f"  error: {outcome.path}: {outcome.reason}")
    if summary.elapsed is not None:
        lines.append(f"Finished in {format_duration(summary.elapsed)}")
    return lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crlf2lf",
        description="Convert CRLF line endings to LF in text files",
    )
    parser.add_argument(
        "roots",
        nargs="*",
        default=["."],
        metavar="root",
        help="Root directories to process (default: current directory)",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Show what would be converted without modifying files",
    )
    parser.add_argument(
        "--recursive",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Descend into subdirectories (--no-recursive processes only the root)",
    )
    parser.add_argument(
        "--skip-hidden",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Skip files and directories whose name starts with '.'",
    )
    parser.add_argument(
        "--ext",
        action="append",
        dest="extensions",
        metavar="LIST",
        default=None,
        help="Only process files with these extensions, comma separated and "
        "repeatable (e.g. --ext rs,py --ext md). Matching is case-insensitive, "
        "the leading dot is optional and only the last suffix counts, so 'gz' "
        "matches 'a.tar.gz'. Files without an extension never match.",
    )
    parser.add_argument(
        "--lone-cr",
        action="store_true",
        help="Also convert a CR that is not followed by LF (old Mac line endings)",
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable the progress bar"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-file", default=None, help="Also append log messages to this file"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"crlf2lf v{__version__}",
        help="Show program version and exit",
    )
    return parser


def build_configs(args: argparse.Namespace) -> List[Config]:
    """Build one Config per root directory named on the command line."""
    extensions = (
        parse_extensions(args.extensions) if args.extensions is not None else None
    )
    return [
        Config(
            root=root,
            recursive=args.recursive,
            dry_run=args.dry_run,
            skip_hidden=args.skip_hidden,
            include_extensions=extensions,
            convert_lone_cr=args.lone_cr,
            show_progress=not args.no_progress,
        )
        for root in dict.fromkeys(os.path.abspath(r) for r in args.roots)
    ]


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.extensions is not None and not parse_extensions(args.extensions):
        parser.error("--ext needs at least one non-empty extension")

    # Set logging level based on verbosity
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    file_handler: Optional[logging.FileHandler] = None
    if args.log_file:
        file_handler = logging.FileHandler(args.log_file, mode="a")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    try:
        logger.info("crlf2lf v%s - CRLF to LF converter", __version__)
        configs = build_configs(args)
        options = configs[0]
        logger.info(
            "Options: roots=%s, recursive=%s, dry_run=%s, skip_hidden=%s",
            ", ".join(config.root for config in configs),
            options.recursive,
            options.dry_run,
            options.skip_hidden,
        )
        if options.include_extensions:
            logger.info(
                "Extensions: %s", ", ".join(sorted(options.include_extensions))
            )

        # Every root is checked before any file is touched
        for config in configs:
            check_root(config.root)

        summary = RunSummary(dry_run=options.dry_run)
        for config in configs:
            walk(config, summary)

        for line in format_summary(summary):
            logger.info("%s", line)
        if summary.errors:
            logger.warning(
                "Encountered errors while processing %d files", len(summary.errors)
            )
        return 0
    except FatalError as e:
        logger.error("Error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        if logger.isEnabledFor(logging.DEBUG):
            import traceback  # pylint: disable=import-outside-toplevel

            logger.debug("Traceback: %s", traceback.format_exc())
        return 1
    finally:
        if file_handler is not None:
            logger.removeHandler(file_handler)
            file_handler.close()


if __name__ == "__main__":
    sys.exit(main())
