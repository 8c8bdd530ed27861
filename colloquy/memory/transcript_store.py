"""Append-only conversation transcript storage"""

import json
from datetime import datetime
from typing import Optional, Dict
import redis.asyncio as redis

from colloquy.context.tokens import estimate_message_tokens
from colloquy.errors.exceptions import DuplicateNameError
from colloquy.models.conversation import Conversation, Message
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)


class TranscriptStore:
    """
    Conversation transcripts keyed by conversation id

    Messages live in a Redis list (``conversation:{id}:messages``) that is
    only ever RPUSHed; conversation metadata lives beside it. Without a
    Redis connection the store keeps transcripts in process. Expiry is left
    to the optional key TTL; nothing here deletes transcripts.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.redis_client: Optional[redis.Redis] = None
        self.ttl_seconds = ttl_seconds
        self.conversations: Dict[str, Conversation] = {}

    async def connect(self, redis_url: str = "redis://localhost:6379/5", password: Optional[str] = None):
        """Connect to Redis"""
        try:
            self.redis_client = redis.from_url(redis_url, password=password, decode_responses=True)
            await self.redis_client.ping()
        except Exception as e:
            logger.warning("Redis connection failed: %s. Transcripts kept in memory only.", e)
            self.redis_client = None

    async def disconnect(self):
        """Disconnect"""
        if self.redis_client:
            await self.redis_client.aclose()

    async def create(self, conversation: Conversation) -> Conversation:
        """Register a new conversation"""
        if await self.get(conversation.id) is not None:
            raise DuplicateNameError("Conversation", conversation.id)

        self.conversations[conversation.id] = conversation
        if self.redis_client:
            await self.redis_client.set(self._meta_key(conversation.id), self._meta_json(conversation), nx=True)
            await self._touch(conversation.id)
        return conversation

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by id"""
        if conversation_id in self.conversations:
            return self.conversations[conversation_id]

        if not self.redis_client:
            return None

        meta = await self.redis_client.get(self._meta_key(conversation_id))
        if not meta:
            return None

        raw_messages = await self.redis_client.lrange(self._messages_key(conversation_id), 0, -1)
        conv_dict = json.loads(meta)
        conv_dict["messages"] = [Message.model_validate_json(raw) for raw in raw_messages]
        conversation = Conversation.model_validate(conv_dict)
        self.conversations[conversation_id] = conversation
        return conversation

    async def append(self, conversation: Conversation, message: Message):
        """Append a message; the only way messages enter a transcript"""
        conversation.messages.append(message)
        conversation.token_estimate += estimate_message_tokens(message)
        conversation.updated_at = datetime.now()

        if self.redis_client:
            await self.redis_client.rpush(self._messages_key(conversation.id), message.model_dump_json())
            await self.save(conversation)

    async def save(self, conversation: Conversation):
        """Persist conversation metadata (state, status, counters)"""
        conversation.updated_at = datetime.now()
        if self.redis_client:
            await self.redis_client.set(self._meta_key(conversation.id), self._meta_json(conversation))
            await self._touch(conversation.id)

    async def _touch(self, conversation_id: str):
        if self.ttl_seconds:
            await self.redis_client.expire(self._meta_key(conversation_id), self.ttl_seconds)
            await self.redis_client.expire(self._messages_key(conversation_id), self.ttl_seconds)

    def _meta_key(self, conversation_id: str) -> str:
        return f"conversation:{conversation_id}"

    def _messages_key(self, conversation_id: str) -> str:
        return f"conversation:{conversation_id}:messages"

    def _meta_json(self, conversation: Conversation) -> str:
        return conversation.model_dump_json(exclude={"messages"})
