"""Content processor: content-addressed storage and asynchronous file processing."""

__version__ = "1.0.0"
