"""
Study room chat: a per-room message log where mentioning @help_me gets an
answer from the AI assistant, plus on-demand summaries of the discussion.
"""

import logging
import re
from datetime import datetime, timezone

import ai_flows
from models import AI_MENTION_NAME, AI_USER_ID, AI_USER_NAME, MAX_MESSAGE_LENGTH, ChatMessage

logger = logging.getLogger('synergylearn.chat')

_MENTION = re.compile(rf"@{AI_MENTION_NAME}\s*(.*)", re.IGNORECASE)
ASSISTANT_FALLBACK_QUERY = "User mentioned me."
ASSISTANT_ERROR_REPLY = "Sorry, I had trouble processing that. Please try again or rephrase your question."


def assistant_query(text):
    """The question addressed to the assistant, or None when it is not mentioned."""
    match = _MENTION.search(text)
    if match is None:
        return None
    return match.group(1).strip() or ASSISTANT_FALLBACK_QUERY


class StudyRoomChat:
    def __init__(self, repository, clock=None):
        self.repository = repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def list_messages(self, room_id, limit=100):
        return self.repository.list_messages(room_id, limit=limit)

    def post_message(self, room_id, user, text):
        """
        Store a learner's message and, if it mentions the assistant, its reply.

        Returns the list of messages written, the learner's first. A failed
        assistant call is answered with an apology message rather than an error,
        so the learner's own message is never lost.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValueError("A message cannot be empty")
        text = text.strip()
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Messages are limited to {MAX_MESSAGE_LENGTH} characters")

        message = ChatMessage(id=None, user_id=user.id, user_name=user.display_name, text=text, timestamp=self.clock())
        written = [self.repository.add_message(room_id, message)]

        query = assistant_query(text)
        if query is not None:
            try:
                reply_text = ai_flows.chat_assistant(query)
            except Exception as e:
                logger.error(f"Assistant failed to answer in room {room_id}: {e}")
                reply_text = ASSISTANT_ERROR_REPLY
            reply = ChatMessage(id=None, user_id=AI_USER_ID, user_name=AI_USER_NAME, text=reply_text,
                                timestamp=self.clock())
            written.append(self.repository.add_message(room_id, reply))
        return written

    def summarize(self, room_id, limit=200):
        messages = self.repository.list_messages(room_id, limit=limit)
        return ai_flows.summarize_chat([{'userName': m.user_name, 'text': m.text} for m in messages])
