"""Remote model providers."""

from .completion import ChatMessage, CompletionProvider, CompletionResult
from .embeddings import EmbeddingProvider
from .usage import TokenUsage, UsageTracker

__all__ = [
    "ChatMessage",
    "CompletionProvider",
    "CompletionResult",
    "EmbeddingProvider",
    "TokenUsage",
    "UsageTracker",
]
