"""Share-link storage for snippets.

The execution core never touches this; the server exposes it for clients
that want short share ids. Anything implementing `SnippetStore` (a document
or key-value database client) can be injected in place of the in-memory one.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from .execution.types import Language

logger = logging.getLogger(__name__)

SHARE_ID_LENGTH = 8
_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True, slots=True)
class Snippet:
    share_id: str
    language: str
    code: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SnippetStore(Protocol):
    def put(self, language: str, code: str) -> str:
        """Persist a snippet and return its share id.

        Example:
            ```python
            share_id = store.put("python", "print(1)")
            ```
        """
        ...

    def get(self, share_id: str) -> Snippet | None:
        """Return the snippet for `share_id`, or None when unknown.

        Example:
            ```python
            snippet = store.get("k3x9a0qz")
            ```
        """
        ...


def new_share_id() -> str:
    """Return a random 8-character `[a-z0-9]` id.

    Example:
        ```python
        new_share_id()  # "k3x9a0qz"
        ```
    """
    return "".join(secrets.choice(_ALPHABET) for _ in range(SHARE_ID_LENGTH))


class InMemorySnippetStore:
    """Process-local store; contents are lost on restart.

    Example:
        ```python
        store = InMemorySnippetStore(max_entries=100)
        ```
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        """Keep at most `max_entries` snippets, dropping the oldest first.

        Example:
            ```python
            InMemorySnippetStore(max_entries=2)
            ```
        """
        self._max_entries = max_entries
        self._items: dict[str, Snippet] = {}
        self._lock = threading.Lock()

    def put(self, language: str, code: str) -> str:
        """Store a snippet under a fresh share id.

        Raises ValueError for unsupported languages and blank code.

        Example:
            ```python
            share_id = store.put("c", source)
            ```
        """
        try:
            Language(language)
        except ValueError as exc:
            raise ValueError(f"Unsupported language: {language!r}") from exc
        if not code.strip():
            raise ValueError("Cannot share empty code")
        with self._lock:
            share_id = new_share_id()
            while share_id in self._items:
                share_id = new_share_id()
            if len(self._items) >= self._max_entries:
                # dicts keep insertion order, so this drops the oldest snippet
                oldest = next(iter(self._items))
                del self._items[oldest]
                logger.debug("Evicted snippet %s", oldest)
            self._items[share_id] = Snippet(share_id=share_id, language=language, code=code)
        return share_id

    def get(self, share_id: str) -> Snippet | None:
        """Return the stored snippet, or None.

        Example:
            ```python
            store.get(share_id).code
            ```
        """
        with self._lock:
            return self._items.get(share_id)

    def __len__(self) -> int:
        """Return the number of stored snippets.

        Example:
            ```python
            len(store)
            ```
        """
        with self._lock:
            return len(self._items)
