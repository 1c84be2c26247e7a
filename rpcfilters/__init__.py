"""RPC client and server filters (metadata blocking, validation, statistics) and a small metrics toolkit."""

__version__ = "0.1.0"

__all__ = ["blocker", "context", "errors", "latency", "metrics", "slidingwindow", "tvar", "validation"]