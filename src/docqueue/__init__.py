"""docqueue: admission, scheduling and quota accounting for document processing jobs."""

__version__ = "0.1.0"
