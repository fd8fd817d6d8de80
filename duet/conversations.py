"""In-memory conversation store.

Holds every conversation for the lifetime of the process. The pipeline and
the history endpoints only talk to ``ConversationStore``; nothing else touches
the underlying dict.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from duet.errors import ConversationNotFoundError
from duet.schemas import CodeBlock, Conversation, Message, Role

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def create_conversation(self) -> Conversation:
        conversation = Conversation(id=str(uuid4()))
        self._conversations[conversation.id] = conversation
        logger.debug(f"Created conversation {conversation.id}")
        return conversation

    def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        code_blocks: list[CodeBlock] | None = None,
    ) -> Message:
        conversation = self.get_conversation(conversation_id)
        message = Message(
            id=str(uuid4()),
            role=role,
            content=content,
            code_blocks=code_blocks or None,
        )
        conversation.messages.append(message)
        logger.debug(f"Added {role} message to conversation {conversation_id}")
        return message

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def get_messages(self, conversation_id: str) -> list[Message]:
        return self.get_conversation(conversation_id).messages

    def get_all_conversations(self) -> list[Conversation]:
        """All conversations, newest first."""
        # reversed() first so conversations created in the same millisecond
        # still come out newest first.
        return sorted(
            reversed(self._conversations.values()),
            key=lambda c: c.created_at,
            reverse=True,
        )

    def clear_messages(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id).messages.clear()
        logger.debug(f"Cleared messages for conversation {conversation_id}")
