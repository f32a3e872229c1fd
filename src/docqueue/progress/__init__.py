"""Operation progress tracking and status views."""

from docqueue.progress.tracker import ProgressTracker, ProgressUpdate

__all__ = ["ProgressTracker", "ProgressUpdate"]
