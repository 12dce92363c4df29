"""Hält pro Nutzer die Dify-Konversations-ID, damit aufeinanderfolgende
Webhook-Aufrufe im selben Dify-Gespräch landen. Nur im Speicher; lebt so
lange wie der Prozess."""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple
from uuid import uuid4

logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """Schnittstelle für die Zuordnung Nutzer -> Konversations-ID."""

    @abstractmethod
    def get(self, user_id: str) -> Tuple[str, bool]:
        """Liefert ``(conversation_id, found)``."""

    @abstractmethod
    def save(self, user_id: str, conversation_id: str) -> None:
        """Legt die Zuordnung an oder überschreibt sie."""

    @abstractmethod
    def generate(self, user_id: str) -> str:
        """Erzeugt eine neue ID, speichert und liefert sie."""

    @abstractmethod
    def delete(self, user_id: str) -> None:
        ...


class InMemoryConversationStore(ConversationStore):
    """Prozesslokaler Speicher hinter einem einfachen ``threading.Lock``.

    Das Lock serialisiert auch Lesezugriffe; jeder geschützte Abschnitt ist
    ein einzelner Dict-Zugriff.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Tuple[str, bool]:
        with self._lock:
            conversation_id = self._conversations.get(user_id)
        if conversation_id is None:
            logger.info(f"No conversation id stored for user '{user_id}'")
            return "", False
        logger.info(f"Found conversation id '{conversation_id}' for user '{user_id}'")
        return conversation_id, True

    def save(self, user_id: str, conversation_id: str) -> None:
        with self._lock:
            self._conversations[user_id] = conversation_id
        logger.info(f"Saved conversation id '{conversation_id}' for user '{user_id}'")

    def generate(self, user_id: str) -> str:
        conversation_id = str(uuid4())
        with self._lock:
            self._conversations[user_id] = conversation_id
        logger.info(f"Generated conversation id '{conversation_id}' for user '{user_id}'")
        return conversation_id

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._conversations.pop(user_id, None)
        logger.info(f"Deleted conversation id for user '{user_id}'")


def resolve_conversation_id(
    store: ConversationStore, user_id: str, requested_id: Optional[str] = None
) -> str:
    """Bestimmt die Konversations-ID für einen Aufruf.

    - Mitgeschickte ID gewinnt und wird gespeichert (letzter Schreiber gewinnt).
    - Sonst die gespeicherte ID des Nutzers.
    - Sonst leer; Dify legt dann selbst ein neues Gespräch an.
    """
    if requested_id:
        store.save(user_id, requested_id)
        return requested_id

    conversation_id, found = store.get(user_id)
    if found:
        return conversation_id

    logger.info(f"No conversation for user '{user_id}', Dify will start a new one")
    return ""
