"""Message-passing software transactional memory with lock service nodes and application nodes."""

__version__ = "0.1.0"