"""
Conversational agent client.

Wraps ``AsyncOpenAI`` chat completions.  History per conversation lives in
the ``messages`` table of :mod:`parley.infra.database`; each ``reply()``
appends the user turn, sends the last ``max_history`` messages, and appends
the assistant answer.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from openai import AsyncOpenAI

from parley.infra import database

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant chatting in a Matrix room."


@dataclass
class AgentConfig:
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_history: int = 40
    max_tokens: int = 1024

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "AgentConfig":
        raw = raw or {}
        return cls(
            api_key=raw.get("api_key", ""),
            base_url=raw.get("base_url", cls.base_url),
            model=raw.get("model", cls.model),
            system_prompt=raw.get("system_prompt", DEFAULT_SYSTEM_PROMPT),
            max_history=int(raw.get("max_history", cls.max_history)),
            max_tokens=int(raw.get("max_tokens", cls.max_tokens)),
        )


def _text_of(message: Union[str, list[dict]]) -> str:
    """Flatten multimodal content parts to the text stored in history."""
    if isinstance(message, str):
        return message
    parts = [p.get("text", "") for p in message if p.get("type") == "text"]
    if any(p.get("type") == "image_url" for p in message):
        parts.append("[image attached]")
    return "\n".join(p for p in parts if p)


class AgentClient:

    def __init__(self, config: AgentConfig, client: Any = None) -> None:
        self._cfg = config
        self._client = client or AsyncOpenAI(api_key=config.api_key or "none", base_url=config.base_url)

    async def reply(self, conversation_id: str, message: Union[str, list[dict]]) -> str:
        """Send *message* in *conversation_id* and return the agent's answer.

        *message* is either plain text or a list of OpenAI content parts
        (text and ``image_url``).  Only the text goes into stored history;
        images are sent for the current turn only.
        """
        history = await database.async_call(
            database.load_history, conversation_id, self._cfg.max_history,
        )
        messages: list[dict] = [{"role": "system", "content": self._cfg.system_prompt}]
        messages.extend(history)
        messages.append({"role": "user", "content": message})

        await database.async_call(database.append_message, conversation_id, "user", _text_of(message))

        raw = await self._client.chat.completions.create(
            model=self._cfg.model,
            messages=messages,
            max_tokens=self._cfg.max_tokens,
        )
        if not raw.choices:
            logger.warning("Agent returned no choices for conversation %s", conversation_id)
            return ""
        answer = (raw.choices[0].message.content or "").strip()
        if answer:
            await database.async_call(database.append_message, conversation_id, "assistant", answer)
        logger.debug("Agent reply for %s: %s", conversation_id, answer[:120])
        return answer
