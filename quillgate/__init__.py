"""Admission and orchestration gateway for a generative-text service."""

__version__ = "0.1.0"
