"""Conversation session state shared by consecutive sends of one chat.

Holds the backend-assigned conversation id and the owning patient id.
The id is written only from the read loop of a send; callers read it for
the next send and call reset() to start a new conversation.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional

logger = logging.getLogger("mama.chat_session")

DEFAULT_PATIENT_ID = 1

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def normalize_patient_id(value: Any, default: int = DEFAULT_PATIENT_ID) -> int:
    """Coerce a caller-supplied patient id to the integer the backend expects.

    - int: used as is (bool is not a patient id)
    - integral float: converted
    - str: leading integer parsed ("42" -> 42, " 7 " -> 7, "12abc" -> 12)
    - anything else, empty or zero: default

    A fractional float (3.5) becomes the default. The mobile chat screen
    forwards such a number unchanged; here the wire field stays an integer.
    """
    if not value or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else default
    if isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if match:
            return int(match.group(1))
    return default


class ConversationSession:
    """Conversation id holder: Unbound -> Bound(id).

    on_conversation_id fires once each time the bound id changes value.
    """

    def __init__(
        self,
        patient_id: Any = None,
        conversation_id: Optional[str] = None,
        on_conversation_id: Optional[Callable[[str], None]] = None,
        default_patient_id: int = DEFAULT_PATIENT_ID,
    ):
        self.patient_id = normalize_patient_id(patient_id, default_patient_id)
        self._conversation_id = conversation_id or None
        self._on_conversation_id = on_conversation_id

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def is_bound(self) -> bool:
        return self._conversation_id is not None

    def bind(self, conversation_id: str) -> bool:
        """Bind to conversation_id. Returns False if it was already bound to it."""
        if conversation_id == self._conversation_id:
            return False

        previous = self._conversation_id
        self._conversation_id = conversation_id
        logger.info(
            "Conversation bound: %s (previous=%s, patientId=%s)",
            conversation_id,
            previous,
            self.patient_id,
        )
        if self._on_conversation_id is not None:
            self._on_conversation_id(conversation_id)
        return True

    def reset(self) -> None:
        """Forget the conversation id; the next send starts a new conversation."""
        if self._conversation_id is not None:
            logger.info("Conversation reset: %s", self._conversation_id)
        self._conversation_id = None
