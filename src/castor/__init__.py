"""Castor: one message model over many LLM provider APIs.

Public API:
    - generate(): Single prompt execution
    - Generation: Multi-turn conversation with tool execution
    - Config: Configuration dataclass
    - Message / Action: Canonical conversation values
"""

from __future__ import annotations

import logging

from castor.config import Config, merge_params
from castor.errors import (
    APIError,
    CastError,
    CastorError,
    ConfigurationError,
    GenerationProviderError,
    InvalidRequestError,
    RateLimitError,
    StreamAbandonedError,
    TransientAPIError,
)
from castor.generation import Generation, generate
from castor.messages import Action, Message
from castor.providers import get_provider, register_provider
from castor.response import EmbedResponse, PromptResponse
from castor.retry import RetryPolicy
from castor.schema import generate_schema, normalize_response_format
from castor.usage import Usage

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "Action",
    "CastError",
    "CastorError",
    "Config",
    "ConfigurationError",
    "EmbedResponse",
    "Generation",
    "GenerationProviderError",
    "InvalidRequestError",
    "Message",
    "PromptResponse",
    "RateLimitError",
    "RetryPolicy",
    "StreamAbandonedError",
    "TransientAPIError",
    "Usage",
    "generate",
    "generate_schema",
    "get_provider",
    "merge_params",
    "normalize_response_format",
    "register_provider",
]
