"""Utility helpers for podflow."""

from .retry import compute_backoff, wait_backoff

__all__ = ["compute_backoff", "wait_backoff"]
