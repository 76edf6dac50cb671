"""Storage and Raft consensus core of a small replicated database."""

__version__ = "0.1.0"