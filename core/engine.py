"""
LLM Responder — external language model collaborator for ai_response nodes.

The reply is an opaque string: the flow engine sends it as-is and never
parses it. Supports both Anthropic and OpenAI providers; the SDKs are
imported lazily so the engine runs without them when no flow uses AI nodes.
"""
from __future__ import annotations

import structlog
from typing import Any, Mapping, Optional

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()


class LLMResponder:
    """
    Generates replies using Claude or OpenAI.
    Failures degrade to an empty string; the caller decides the fallback text.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or get_settings().llm
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self.config.provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self.config.provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]]) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text

    async def generate(
        self,
        history: list[dict[str, str]],
        variables: Mapping[str, Any],
        user_message: str = "",
        extra_context: str = "",
    ) -> str:
        """
        Generate a reply for an ai_response node.

        Args:
            history: prior {"role", "content"} turns kept on the session
            variables: session variables, exposed to the model as known facts
            user_message: the inbound text being answered (may be empty)
            extra_context: per-node instructions configured in the flow
        """
        system = self._build_system_prompt(variables, extra_context)
        messages = list(history)
        if user_message:
            messages.append({"role": "user", "content": user_message})
        if not messages:
            messages = [{"role": "user", "content": "Start the conversation."}]

        try:
            return (await self._call_llm(system, messages)).strip()
        except Exception as e:
            logger.error("llm_generation_failed", provider=self.config.provider, error=str(e))
            return ""

    def _build_system_prompt(self, variables: Mapping[str, Any], extra_context: str) -> str:
        parts = [self.config.system_prompt]
        if extra_context:
            parts.append(extra_context)
        if variables:
            facts = "\n".join(f"- {k}: {v}" for k, v in variables.items() if v)
            if facts:
                parts.append(f"Known information about the contact:\n{facts}")
        return "\n\n".join(p for p in parts if p)
