"""Keep one coding agent running per open task."""

__version__ = "0.1.0"
