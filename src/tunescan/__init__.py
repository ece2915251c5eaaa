"""tunescan - durable background jobs and directory scanning for music libraries."""

__version__ = "0.1.0"
