"""Bounded, iterative directory walker yielding audio files.

Hey future me - this walker is built to survive HUGE and HOSTILE trees:

- NO recursion: an explicit stack, so a 10k-deep tree can't blow the Python stack
- Depth bound: root is depth 0, subdirectories are only entered while depth < max_depth
- File bound: stops after max_files entries, even mid-directory
- Lazy: it's an async generator, the caller pulls entries one at a time (backpressure for free)
- Non-blocking: every scandir/stat runs in a thread via asyncio.to_thread, gated by a
  semaphore so one scan can't hog the thread pool (MAX_FS_CONCURRENCY)
- Symlinks are NOT followed: a symlinked directory is neither entered nor yielded

Errors below the root (permission denied, file vanished between listing and stat) are
reported through on_error and skipped. Only a root that can't be opened aborts the walk.

Entries inside one directory are visited in sorted name order so two walks of the same
tree yield the same sequence.
"""

import asyncio
import errno
import logging
import os
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from tunescan.application.workers.job_types import ScanOptions
from tunescan.config import JobSettings
from tunescan.domain.entities import WalkEntry, WalkError
from tunescan.domain.exceptions import ScanRootUnreadableError

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = frozenset(
    {
        # Lossy
        ".mp3",
        ".m4a",
        ".aac",
        ".ogg",
        ".opus",
        ".wma",
        # Lossless
        ".flac",
        ".wav",
        ".aiff",
        ".alac",
    }
)

WalkErrorCallback = Callable[[WalkError], None]


@dataclass(frozen=True)
class _DirEntry:
    name: str
    is_dir: bool
    is_file: bool


def _error_code(error: OSError) -> str:
    if error.errno is not None and error.errno in errno.errorcode:
        return errno.errorcode[error.errno]
    return type(error).__name__


def _list_directory(path: str) -> list[_DirEntry]:
    """List a directory without following symlinks (runs in a worker thread)."""
    with os.scandir(path) as iterator:
        entries = [
            _DirEntry(
                name=entry.name,
                is_dir=entry.is_dir(follow_symlinks=False),
                is_file=entry.is_file(follow_symlinks=False),
            )
            for entry in iterator
        ]
    entries.sort(key=lambda entry: entry.name)
    return entries


def _stat_file(path: str) -> tuple[int, int]:
    info = os.stat(path)
    return info.st_size, info.st_mtime_ns // 1_000_000


def normalize_extension(extension: str) -> str:
    """Lowercase an extension and give it a leading dot ("FLAC" → ".flac")."""
    extension = extension.strip().lower()
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return extension


class DirectoryWalker:
    """Walks one scan root and yields WalkEntry objects for audio files."""

    def __init__(
        self,
        options: ScanOptions | None,
        settings: JobSettings,
        on_error: WalkErrorCallback | None = None,
        fs_semaphore: asyncio.Semaphore | None = None,
    ) -> None:
        """Initialize the walker.

        Args:
            options: Per-scan traversal options (bounds are capped by settings)
            settings: Hard limits (MAX_SCAN_DEPTH, MAX_FILES_PER_SCAN, MAX_FS_CONCURRENCY)
            on_error: Called for every non-fatal traversal error
            fs_semaphore: Shared gate for filesystem calls (default: private one)
        """
        options = options or ScanOptions()
        self._ignore_directories = frozenset(options.ignore_directories)
        self._ignore_extensions = frozenset(
            normalize_extension(ext) for ext in options.ignore_extensions
        )
        self._max_depth = min(
            options.max_depth if options.max_depth is not None else settings.max_scan_depth,
            settings.max_scan_depth,
        )
        self._max_files = min(
            options.max_files if options.max_files is not None else settings.max_files_per_scan,
            settings.max_files_per_scan,
        )
        self._on_error = on_error
        self._fs_semaphore = fs_semaphore or asyncio.Semaphore(settings.max_fs_concurrency)

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @property
    def max_files(self) -> int:
        return self._max_files

    async def _run_fs(self, func, *args):  # type: ignore[no-untyped-def]
        async with self._fs_semaphore:
            return await asyncio.to_thread(func, *args)

    def _report(self, path: str, error: OSError) -> None:
        walk_error = WalkError(path=path, code=_error_code(error), message=str(error))
        logger.debug(f"Skipping {walk_error}: {error}")
        if self._on_error is not None:
            self._on_error(walk_error)

    async def walk(self, root: str) -> AsyncIterator[WalkEntry]:
        """Yield audio files below ``root``.

        Raises:
            ScanRootUnreadableError: The root itself can't be listed
        """
        stack: list[tuple[str, int]] = [(root, 0)]
        emitted = 0

        while stack:
            directory, depth = stack.pop()
            try:
                entries = await self._run_fs(_list_directory, directory)
            except OSError as e:
                if depth == 0:
                    raise ScanRootUnreadableError(root, e.strerror or str(e)) from e
                self._report(directory, e)
                continue

            subdirectories: list[str] = []

            for entry in entries:
                if entry.name in self._ignore_directories:
                    continue

                entry_path = os.path.join(directory, entry.name)

                if entry.is_dir:
                    if depth < self._max_depth:
                        subdirectories.append(entry_path)
                    continue

                if not entry.is_file:
                    continue

                extension = os.path.splitext(entry.name)[1].lower()
                if extension not in AUDIO_EXTENSIONS or extension in self._ignore_extensions:
                    continue

                try:
                    size_bytes, mtime_ms = await self._run_fs(_stat_file, entry_path)
                except OSError as e:
                    self._report(entry_path, e)
                    continue

                emitted += 1
                yield WalkEntry(
                    path=entry_path,
                    size_bytes=size_bytes,
                    mtime_ms=mtime_ms,
                    extension=extension,
                )

                if emitted >= self._max_files:
                    logger.info(f"Walk of {root} stopped at max_files={self._max_files}")
                    return

            # Reversed so the stack pops them in name order
            stack.extend((subdirectory, depth + 1) for subdirectory in reversed(subdirectories))


def walk_directory(
    root: str,
    options: ScanOptions | None,
    settings: JobSettings,
    on_error: WalkErrorCallback | None = None,
) -> AsyncIterator[WalkEntry]:
    """Shortcut for DirectoryWalker(options, settings, on_error).walk(root)."""
    return DirectoryWalker(options, settings, on_error=on_error).walk(root)
