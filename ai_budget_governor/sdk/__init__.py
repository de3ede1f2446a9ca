"""
SDK for AI Budget Governor.

Provides budget-governed access to a generative AI backend.
"""

from .backend import AIBackend, AIResult
from .governed import GovernedAI, GovernedResponse
from .openai_client import OpenAIBackend

__all__ = ["AIBackend", "AIResult", "GovernedAI", "GovernedResponse", "OpenAIBackend"]
