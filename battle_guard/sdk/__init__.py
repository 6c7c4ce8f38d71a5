"""
Completion service bindings for Battle Guard.

Provides the OpenAI-backed completion gateway.
"""

from .openai_client import OpenAIGateway

__all__ = ["OpenAIGateway"]
