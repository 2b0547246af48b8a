"""Textual dashboard."""

from mihomot.tui.app import MihomotApp, run_tui

__all__ = ["MihomotApp", "run_tui"]
