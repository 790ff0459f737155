"""Textual front end for proctree."""

from proctree.tui.app import ProcessTreeApp, run_tui

__all__ = ["ProcessTreeApp", "run_tui"]
