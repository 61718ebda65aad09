"""Exceptions raised by spansquash."""

from __future__ import annotations


class SpansquashConfigError(ValueError):
    """
    Error raised when there is a problem with the spansquash configuration.
    """
