"""Helmsman: an agent runtime that steers a streaming LLM through tools."""

__version__ = "0.1.0"
