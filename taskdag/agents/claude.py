"""Anthropic-backed agent invoker."""

from typing import Any

import anyio
from loguru import logger

from taskdag.agents.base import AgentInvoker, ModelTier, extract_json
from taskdag.core.config import Settings, get_settings
from taskdag.core.exceptions import InvokerFailure, InvokerRateLimited, InvokerTimeout
from taskdag.prompts.templates import SYSTEM_PROMPT, render_payload


class ClaudeInvoker(AgentInvoker):
    """
    Invoke Claude models through the Anthropic Messages API.

    The client is created lazily so the engine can run without the API key
    when no phase needs an agent.

    Example:
        >>> invoker = ClaudeInvoker()
        >>> answer = await invoker.invoke("goals", payload, ModelTier.CAPABLE)
    """

    name = "claude"

    def __init__(self, settings: Settings | None = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import AsyncAnthropic

            api_key = self.settings.anthropic_api_key
            self._client = AsyncAnthropic(
                api_key=api_key.get_secret_value() if api_key else None,
                max_retries=0,
            )
        return self._client

    def model_for(self, tier: ModelTier) -> str:
        if tier is ModelTier.CAPABLE:
            return self.settings.capable_model
        return self.settings.fast_model

    async def invoke(
        self,
        phase: str,
        payload: dict[str, Any],
        tier: ModelTier,
    ) -> dict[str, Any]:
        import anthropic

        client = self._get_client()
        model = self.model_for(tier)
        prompt = render_payload(phase, payload)

        logger.debug(f"Invoking {model} for phase '{phase}' ({len(prompt)} chars)")

        try:
            with anyio.fail_after(self.settings.invoker_timeout):
                response = await client.messages.create(
                    model=model,
                    max_tokens=self.settings.invoker_max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                )
        except TimeoutError as e:
            raise InvokerTimeout(
                f"Agent call for '{phase}' timed out after {self.settings.invoker_timeout}s",
                phase=phase,
            ) from e
        except anthropic.APITimeoutError as e:
            raise InvokerTimeout(f"Agent call for '{phase}' timed out", phase=phase) from e
        except anthropic.RateLimitError as e:
            raise InvokerRateLimited(f"Agent call for '{phase}' was rate limited", phase=phase) from e
        except anthropic.APIError as e:
            raise InvokerFailure(f"Agent call for '{phase}' failed: {e}", phase=phase) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return extract_json(text, phase=phase)

