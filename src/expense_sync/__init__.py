"""Offline-first sync for a personal expense tracker."""

__version__ = "0.1.0"
