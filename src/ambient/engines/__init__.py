"""Summarization backends."""

from ambient.engines.base import Summarizer

__all__ = ["Summarizer"]
