"""Terminal dashboard for the mihomo proxy daemon."""

__version__ = "0.1.0"
