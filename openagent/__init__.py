"""Network monitoring agent helpers: socket tables, process tagging, hashing, socket I/O and logs."""

__version__ = "0.1.0"

__all__ = ["env", "hashutil", "logutil", "netio", "netstats", "process", "tagrules"]