"""Delta sync and resumable chunked transfers between local files and Azure Blob Storage."""

__version__ = "0.1.0"
