"""
Card Recall

Context assembly and hybrid retrieval for chatting with a model about a
workspace of story cards.

Quick Start:
    from cardrecall import Workspace

    with Workspace("~/novel") as ws:
        result = ws.ask("what does the villain want")
        print(result.answer)

CLI Usage:
    cardrecall ask "what does the villain want"
    cardrecall preview "what does the villain want"
    cardrecall search "castle"
    cardrecall reindex
    cardrecall suggest villain --action next-scene

Default Workspace:
    ~/.cardrecall/default, or CARDRECALL_HOME when set.
    Cards are read from cards.json in the workspace directory.

Environment Variables:
    CARDRECALL_HOME          - Override the home directory for workspaces and logs
    CARDRECALL_API_KEY       - API key for the configured provider
    GEMINI_API_KEY           - API key for Gemini (also GOOGLE_API_KEY)
    OPENAI_API_KEY           - API key for the OpenAI provider
"""

from .cards import InMemoryCardRepository, JsonCardRepository, ThreadScope
from .engine import AskResult, ReindexResult, SuggestionResult, SummaryResult, Workspace
from .errors import CardRecallError, Cancelled, ConfigurationError, ProviderError
from .types import CardSnapshot, ContextPreview, TokenUsage

__version__ = "0.1.0"
__all__ = [
    "Workspace",
    "AskResult",
    "ReindexResult",
    "SuggestionResult",
    "SummaryResult",
    "CardSnapshot",
    "ContextPreview",
    "TokenUsage",
    "ThreadScope",
    "InMemoryCardRepository",
    "JsonCardRepository",
    "CardRecallError",
    "Cancelled",
    "ConfigurationError",
    "ProviderError",
]
