"""Stateless conversation clients for the code-generation assistant.

The workflow owns the conversation and replays it in full on every call; a
client only turns ``(conversation, system_prompt)`` into a reply plus usage.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import openai
import structlog
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    ResultMessage,
    TextBlock,
    query,
)

from issuesmith.config import IssuesmithConfig
from issuesmith.models import Message, Role, Usage

log = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
COST_HEADER = "X-OpenRouter-Generation-Cost"


class AssistantError(Exception):
    """Provider failure. The text carries the status code so retry predicates can classify it."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        text = f"{status_code}: {message}" if status_code else message
        super().__init__(text)


@dataclass
class AssistantReply:
    text: str
    usage: Usage = field(default_factory=Usage)


class AssistantClient:
    provider = ""

    async def send(self, conversation: list[Message], system_prompt: str) -> AssistantReply:
        raise NotImplementedError

    def _log_usage(self, usage: Usage) -> None:
        log.info(
            "assistant_usage",
            provider=self.provider,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=round(usage.cost_usd, 6),
        )


class OpenRouterAssistant(AssistantClient):
    """Chat completions against OpenRouter's OpenAI-compatible endpoint."""

    provider = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str = OPENROUTER_BASE_URL,
        max_tokens: int = 8096,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            default_headers={"X-Title": "issuesmith"},
        )

    async def send(self, conversation: list[Message], system_prompt: str) -> AssistantReply:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(m.to_dict() for m in conversation)

        try:
            raw = await self._client.chat.completions.with_raw_response.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
            )
        except openai.APIStatusError as e:
            raise AssistantError(str(e.message), status_code=e.status_code) from e
        except openai.APIError as e:
            raise AssistantError(str(e)) from e

        completion = raw.parse()
        if not completion.choices:
            raise AssistantError("No choices in response")
        text = completion.choices[0].message.content or ""

        usage = Usage(cost_usd=_parse_cost(raw.headers.get(COST_HEADER)))
        if completion.usage:
            usage.input_tokens = completion.usage.prompt_tokens or 0
            usage.output_tokens = completion.usage.completion_tokens or 0

        self._log_usage(usage)
        return AssistantReply(text=text, usage=usage)


def _parse_cost(header: str | None) -> float:
    if not header:
        log.warning("assistant_cost_missing", header=COST_HEADER)
        return 0.0
    try:
        return float(header)
    except ValueError:
        log.warning("assistant_cost_unparseable", header=COST_HEADER, value=header)
        return 0.0


class ClaudeAssistant(AssistantClient):
    """Single-turn, tool-less Claude call with the conversation rendered as a transcript."""

    provider = "claude"

    def __init__(self, *, model: str | None = None, api_key: str = "") -> None:
        self.model = model
        self._env: dict[str, str] = {}
        if api_key:
            self._env["ANTHROPIC_API_KEY"] = api_key

    async def send(self, conversation: list[Message], system_prompt: str) -> AssistantReply:
        options = ClaudeAgentOptions(
            system_prompt=system_prompt or None,
            model=self.model,
            max_turns=1,
            tools=[],
            allowed_tools=[],
            env=self._env,
        )
        texts: list[str] = []
        result: ResultMessage | None = None
        try:
            async for message in query(prompt=render_transcript(conversation), options=options):
                if isinstance(message, AssistantMessage):
                    if message.error == "rate_limit":
                        raise AssistantError("rate limit reached", status_code=429)
                    for block in message.content:
                        if isinstance(block, TextBlock):
                            texts.append(block.text)
                elif isinstance(message, ResultMessage):
                    result = message
        except ClaudeSDKError as e:
            raise AssistantError(str(e)) from e

        if result is not None and result.is_error:
            raise AssistantError(result.result or f"Claude returned an error ({result.subtype})")

        text = "\n".join(texts)
        usage = Usage()
        if result is not None:
            text = text or result.result or ""
            tokens = result.usage or {}
            usage = Usage(
                input_tokens=int(tokens.get("input_tokens") or 0),
                output_tokens=int(tokens.get("output_tokens") or 0),
                cost_usd=result.total_cost_usd or 0.0,
            )

        self._log_usage(usage)
        return AssistantReply(text=text, usage=usage)


def render_transcript(conversation: list[Message]) -> str:
    if len(conversation) == 1 and conversation[0].role == Role.USER:
        return conversation[0].content

    parts = ["Conversation so far (oldest first):"]
    for message in conversation:
        label = "User" if message.role == Role.USER else "Assistant"
        parts.append(f"### {label}\n{message.content}")
    parts.append("Write the assistant's next reply to the last user message.")
    return "\n\n".join(parts)


def create_assistant(config: IssuesmithConfig) -> AssistantClient:
    if config.assistant_provider == "claude":
        # OpenRouter-style ids ("vendor/model") are not Claude model names
        model = config.assistant_model if "/" not in config.assistant_model else None
        return ClaudeAssistant(model=model, api_key=config.assistant_api_key)
    return OpenRouterAssistant(
        api_key=config.assistant_api_key,
        model=config.assistant_model,
        base_url=config.assistant_base_url,
        max_tokens=config.assistant_max_tokens,
    )
