"""Headless coding-agent invocation."""
