"""Application services - directory scanning and scan bookkeeping."""

from tunescan.application.services.directory_walker import (
    AUDIO_EXTENSIONS,
    DirectoryWalker,
    walk_directory,
)
from tunescan.application.services.library_scan_service import LibraryScanService
from tunescan.application.services.path_safety import (
    is_path_inside_allowed_roots,
    is_path_inside_root,
    resolve_scan_root,
)
from tunescan.application.services.scan_run_tracker import ScanRunTracker

__all__ = [
    "AUDIO_EXTENSIONS",
    "DirectoryWalker",
    "LibraryScanService",
    "ScanRunTracker",
    "is_path_inside_allowed_roots",
    "is_path_inside_root",
    "resolve_scan_root",
    "walk_directory",
]
