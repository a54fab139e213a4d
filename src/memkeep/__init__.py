"""memkeep: a local, file-backed memory store with a link graph and similarity search."""

__version__ = "0.1.0"
