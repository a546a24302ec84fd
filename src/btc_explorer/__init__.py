"""Bitcoin block explorer address indexer."""

__version__ = "0.1.0"
