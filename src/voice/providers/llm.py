"""
Agent runner over an OpenAI-compatible chat API (Groq or OpenAI).

Provides:
- Streaming responses
- Per-session conversation history
- System prompt tuned for spoken replies
"""

import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI, OpenAIError

from src.voice.providers.base import AgentRunner, AgentRunnerError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []

    def add_user_message(self, content: str) -> None:
        self._turns.append(ConversationTurn(role="user", content=content))
        self._trim()

    def add_assistant_message(self, content: str) -> None:
        self._turns.append(ConversationTurn(role="assistant", content=content))
        self._trim()

    def _trim(self) -> None:
        # Keep pairs of turns (user + assistant)
        max_messages = self.max_turns * 2
        if len(self._turns) > max_messages:
            self._turns = self._turns[-max_messages:]

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(agent_name: str, channel: str) -> str:
    """System prompt for a spoken conversation."""
    return f"""You are {agent_name}, a friendly voice companion talking with the user over the "{channel}" channel.

Your replies are spoken aloud by a text-to-speech engine.

RESPONSE STYLE:
- Keep replies short: one to three sentences unless asked for more
- Write plain sentences with normal punctuation
- No markdown, bullet points, numbered lists, emoji or code blocks
- Spell out symbols and abbreviations the way you would say them
- Use contractions (I'm, you're, we'll) for natural speech
- If you were interrupted, don't repeat yourself; answer the new question"""


class ChatAgentRunner(AgentRunner):
    """
    Streams chat completions and keeps history per session key.

    Uses the OpenAI client, pointed at Groq by default.
    """

    def __init__(self, config: Any, client: Optional[AsyncOpenAI] = None):
        self.config = config
        provider = (config.llm_provider or "groq").strip().lower()
        if provider == "openai":
            self.model = config.openai_model
            api_key = config.openai_api_key
            base_url = config.openai_base_url or None
        else:
            self.model = config.groq_model
            api_key = config.groq_api_key
            base_url = GROQ_BASE_URL

        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._histories: Dict[str, ConversationHistory] = {}

    def history(self, session_key: str) -> ConversationHistory:
        if session_key not in self._histories:
            self._histories[session_key] = ConversationHistory(
                max_turns=self.config.max_history_turns
            )
        return self._histories[session_key]

    async def run(self, session_key: str, prompt: str, channel: str) -> AsyncIterator[str]:
        history = self.history(session_key)
        messages = [{"role": "system", "content": get_system_prompt(self.config.agent_name, channel)}]
        messages.extend(history.get_messages())
        messages.append({"role": "user", "content": prompt})

        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=256,  # Keep responses short for voice
                temperature=0.7,
            )
        except Exception as e:
            logger.error("LLM request failed", model=self.model, error=str(e))
            raise AgentRunnerError(str(e)) from e

        history.add_user_message(prompt)
        return self._stream(stream, history)

    async def _stream(self, stream: Any, history: ConversationHistory) -> AsyncIterator[str]:
        full_response = ""
        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    text = chunk.choices[0].delta.content
                    full_response += text
                    yield text
        except (OpenAIError, httpx.HTTPError) as e:
            logger.warning("LLM stream ended early", error=str(e))
        finally:
            if full_response:
                history.add_assistant_message(full_response)

    async def close(self) -> None:
        await self._client.close()


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Check that the configured Groq model exists.

    Returns False (and logs) instead of exiting.
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            return False

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        return False

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        logger.error(
            "Groq model not found",
            requested_model=model_name,
            available_models=", ".join(sorted(i for i in model_ids if i)[:10]),
        )
        return False

    logger.info("Groq model validated successfully", model=model_name)
    return True
