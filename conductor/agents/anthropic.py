"""Anthropic agent executor using the anthropic SDK with native async."""

import asyncio
import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import AgentConfig
from conductor.agents.base import AgentExecutor, AgentFailure
from conductor.models import AgentArtifact, AgentRequest
from conductor.registry import ResolvedModels

logger = logging.getLogger(__name__)


class AnthropicAgent(AgentExecutor):
    """Runs each request on the Claude model backing its role hint."""

    def __init__(self, config: AgentConfig, models: ResolvedModels) -> None:
        self._config = config
        self._models = models
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise AgentFailure("anthropic", f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return "anthropic"

    async def invoke(self, request: AgentRequest) -> AgentArtifact:
        model = self._models.model_id(request.model_role)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=model,
                    max_tokens=self._config.max_tokens,
                    messages=[{"role": "user", "content": request.directive}],
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise AgentFailure(request.agent_role, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise AgentFailure(request.agent_role, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise AgentFailure(request.agent_role, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info(
            "%s %s (%s) round %d: %.2fs, %s tokens",
            request.stage_id,
            request.agent_role,
            request.purpose,
            request.round_number,
            latency,
            token_count,
        )

        return AgentArtifact(
            agent_role=request.agent_role,
            model=model,
            round_number=request.round_number,
            content="\n".join(text_blocks),
            latency_sec=latency,
            token_count=token_count,
        )
