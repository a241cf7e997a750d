"""
Language-model provider with a CLI path and an API path.

The harness uses a language model for intent classification and for
free-form persona replies. Two execution paths exist:

- ``cli``: a local command-line client invoked as ``<command> -p <prompt>``
- ``api``: the OpenAI chat completions API

The mode is resolved once, the first time the provider is used, and then
stays fixed for the lifetime of the instance. If the configured mode is
unavailable the other one is used instead. Construct one provider per
process and inject it wherever a model is needed.
"""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError

from agent_harness.config import LLMConfig, settings

logger = logging.getLogger(__name__)


class ProviderMode(str, Enum):
    API = "api"
    CLI = "cli"
    NONE = "none"


@dataclass
class LLMRequest:
    prompt: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout_sec: Optional[float] = None


@dataclass
class LLMResponse:
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)
    duration_ms: float = 0.0
    provider: str = ProviderMode.NONE.value


class LLMProvider:
    """Executes prompts through whichever model path is available."""

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        api_client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self._config = config or settings.llm
        self._api_client = api_client
        self._mode: Optional[ProviderMode] = None

    @property
    def mode(self) -> ProviderMode:
        return self.initialize()

    def _cli_available(self) -> bool:
        return shutil.which(self._config.cli_command) is not None

    def _api_available(self) -> bool:
        return self._api_client is not None or bool(self._config.openai_api_key)

    def _is_mode_available(self, mode: ProviderMode) -> bool:
        if mode == ProviderMode.CLI:
            return self._cli_available()
        return self._api_available()

    def initialize(self) -> ProviderMode:
        """Resolve the execution path. Only the first call does any work."""
        if self._mode is not None:
            return self._mode

        preferred = ProviderMode(self._config.provider_mode)
        secondary = ProviderMode.API if preferred == ProviderMode.CLI else ProviderMode.CLI

        if self._is_mode_available(preferred):
            self._mode = preferred
        elif self._is_mode_available(secondary):
            logger.warning(
                "LLM mode '%s' unavailable, falling back to '%s' for this process",
                preferred.value, secondary.value,
            )
            self._mode = secondary
        else:
            logger.warning("No LLM provider available; model-backed features are disabled")
            self._mode = ProviderMode.NONE

        logger.info("LLM provider initialized in '%s' mode", self._mode.value)
        return self._mode

    def is_available(self) -> bool:
        return self.initialize() != ProviderMode.NONE

    async def check_availability(self) -> dict[str, Any]:
        """Report which paths exist and which one is in use."""
        return {
            "mode": self.initialize().value,
            "cli_available": self._cli_available(),
            "api_available": self._api_available(),
        }

    def _get_api_client(self) -> AsyncOpenAI:
        if self._api_client is None:
            self._api_client = AsyncOpenAI(api_key=self._config.openai_api_key)
        return self._api_client

    async def execute(self, request: LLMRequest) -> LLMResponse:
        """Run one prompt. Failures come back as ``success=False``, never raised."""
        mode = self.initialize()
        start = time.monotonic()
        if mode == ProviderMode.NONE:
            return LLMResponse(success=False, error="No LLM provider available")

        try:
            if mode == ProviderMode.CLI:
                content = await self._execute_cli(request)
                usage: dict[str, int] = {}
            else:
                content, usage = await self._execute_api(request)
        except FileNotFoundError:
            if mode == ProviderMode.CLI and self._api_available():
                logger.warning(
                    "CLI command '%s' disappeared, switching to API mode",
                    self._config.cli_command,
                )
                self._mode = ProviderMode.API
                return await self.execute(request)
            return self._failure(mode, "CLI command not found", start)
        except asyncio.TimeoutError:
            timeout = request.timeout_sec or self._config.timeout_sec
            return self._failure(mode, f"Timed out after {timeout:.1f}s", start)
        except (OpenAIError, RuntimeError, OSError) as e:
            return self._failure(mode, str(e), start)

        return LLMResponse(
            success=True,
            content=content,
            usage=usage,
            duration_ms=(time.monotonic() - start) * 1000,
            provider=mode.value,
        )

    @staticmethod
    def _failure(mode: ProviderMode, error: str, start: float) -> LLMResponse:
        logger.warning("LLM call via %s failed: %s", mode.value, error)
        return LLMResponse(
            success=False,
            error=error,
            duration_ms=(time.monotonic() - start) * 1000,
            provider=mode.value,
        )

    async def _execute_cli(self, request: LLMRequest) -> str:
        prompt = request.prompt
        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\n{request.prompt}"
        args = [self._config.cli_command, "-p", prompt, "--output-format", "text"]
        if request.model:
            args += ["--model", request.model]

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=request.timeout_sec or self._config.timeout_sec
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise RuntimeError(
                f"CLI exited with code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()[:200]}"
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def _execute_api(self, request: LLMRequest) -> tuple[str, dict[str, int]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        completion = await asyncio.wait_for(
            self._get_api_client().chat.completions.create(
                model=request.model or self._config.model,
                messages=messages,
                max_tokens=request.max_tokens or self._config.max_tokens,
                temperature=(
                    request.temperature
                    if request.temperature is not None
                    else self._config.temperature
                ),
            ),
            timeout=request.timeout_sec or self._config.timeout_sec,
        )
        content = completion.choices[0].message.content or ""
        usage = {}
        if completion.usage is not None:
            usage = {
                "input_tokens": completion.usage.prompt_tokens,
                "output_tokens": completion.usage.completion_tokens,
            }
        return content, usage
