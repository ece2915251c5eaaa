"""Configuration module for tunescan."""

from .settings import (
    SCAN_DIRECTORY_JOB_TYPE,
    DatabaseSettings,
    JobSettings,
    Settings,
    get_settings,
)

__all__ = [
    "SCAN_DIRECTORY_JOB_TYPE",
    "DatabaseSettings",
    "JobSettings",
    "Settings",
    "get_settings",
]
