"""
SDK for Quota Guard.

Provides metered provider clients for agent loops.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
