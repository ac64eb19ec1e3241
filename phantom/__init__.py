"""Encrypted proxy request handling, transport mode selection and metrics."""

__version__ = "4.0.0"