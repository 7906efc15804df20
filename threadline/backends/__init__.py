"""
Provider backends for threadline.
One adapter per vendor family, dispatched by model prefix.
"""
from threadline.backends.router import ModelRouter
from threadline.backends.base import BaseProvider
from threadline.backends.openai import OpenAIProvider
from threadline.backends.anthropic import AnthropicProvider
from threadline.backends.google import GoogleProvider

__all__ = [
    "ModelRouter",
    "BaseProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
]
