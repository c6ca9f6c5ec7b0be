"""Asynchronous generation-job orchestration for the V-Try API."""

__version__ = "0.1.0"
