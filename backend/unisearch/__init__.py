"""unisearch - federated local + Google Drive file search backend."""

__version__ = "0.3.0"
