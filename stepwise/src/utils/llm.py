"""Thin OpenAI chat wrapper used by the parser and the refinement bridge."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import openai

from stepwise.src.utils.config import CONFIG, LLMConfig

logger = logging.getLogger("stepwise.llm")


class OpenAIChat:
    """Callable ``(system_prompt, user_prompt) -> text`` backed by chat completions."""

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        *,
        model: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.config = config or CONFIG.llm
        self.model = model or self.config.refine_model or self.config.model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = openai.OpenAI(api_key=self.config.api_key, timeout=self.config.timeout)
        return self._client

    def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> Any:
        """Run one chat completion and return the first choice's message."""
        kwargs: Dict[str, Any] = {"model": model or self.model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.config.max_completion_tokens:
            kwargs["max_completion_tokens"] = self.config.max_completion_tokens
        response = self.client.chat.completions.create(**kwargs)
        return response.choices[0].message

    def __call__(self, system_prompt: str, user_prompt: str) -> str:
        message = self.complete(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]
        )
        text = message.content or ""
        logger.debug("LLM %s returned %d characters", self.model, len(text))
        return text
