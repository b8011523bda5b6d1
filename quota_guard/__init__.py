"""
Quota Guard.

Usage accounting and quota admission control for agentic LLM assistants.
"""

__version__ = "0.1.0"
