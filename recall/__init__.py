"""recall: a personal-assistant CLI that remembers across sessions."""

__version__ = "0.3.0"
