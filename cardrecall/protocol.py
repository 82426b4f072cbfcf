"""
Protocol definitions for the collaborators the engine consumes.

- CardRepository: supplies card snapshots and the active selection
- CredentialStore: supplies the provider API key
"""

from typing import Optional, Protocol, runtime_checkable

from .types import CardSnapshot


@runtime_checkable
class CardRepository(Protocol):
    """
    Source of card snapshots for one workspace.

    Implemented by:
    - JsonCardRepository (workspace JSON export)
    - InMemoryCardRepository (tests, embedding callers)
    """

    def list_cards(self) -> list[CardSnapshot]: ...

    def selected_card_ids(self) -> list[str]: ...


@runtime_checkable
class CredentialStore(Protocol):
    """Source of the provider API key. None when not configured."""

    def load_api_key(self) -> Optional[str]: ...
