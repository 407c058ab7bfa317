"""AI provider abstraction used by the AI worker."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel
from pydantic_ai import Agent

from ..exceptions import ExecutionError

logger = logging.getLogger(__name__)


class ProviderResponse(BaseModel):
    text: str
    model: Optional[str] = None
    finish_reason: str = "stop"
    tokens_used: Optional[int] = None


class AIProvider(ABC):
    """Completes a prompt. Failures raise an ``OrchestratorError``."""

    name: str = "provider"

    @abstractmethod
    async def complete(
        self, prompt: str, system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        ...


class PydanticAIProvider(AIProvider):
    """Provider backed by a :class:`pydantic_ai.Agent`.

    ``model`` is anything ``Agent`` accepts: a ``"provider:model"`` string or
    a model instance such as ``pydantic_ai.models.test.TestModel``.
    """

    name = "pydantic_ai"

    def __init__(self, model: Union[str, Any], system_prompt: Optional[str] = None) -> None:
        self.model = model
        self.system_prompt = system_prompt

    def _model_name(self) -> str:
        if isinstance(self.model, str):
            return self.model
        return getattr(self.model, "model_name", type(self.model).__name__)

    async def complete(
        self, prompt: str, system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        instructions = system_prompt or self.system_prompt
        # Built per call; constructing an agent may require provider credentials.
        agent = Agent(self.model, system_prompt=instructions or ())
        try:
            result = await agent.run(prompt)
        except Exception as exc:
            raise ExecutionError(
                f"Model {self._model_name()} failed: {exc}",
                {"model": self._model_name()},
                network=True,
            ) from exc
        usage = result.usage()
        return ProviderResponse(
            text=str(result.output),
            model=self._model_name(),
            tokens_used=getattr(usage, "total_tokens", None),
        )


class SimulatedProvider(AIProvider):
    """Scripted provider for tests and dry runs.

    Each call pops the next scripted item: a string is returned as the
    response text, a :class:`ProviderResponse` is returned as is and an
    exception is raised. Once the script is exhausted ``default`` (a string
    or a callable taking the prompt) answers.
    """

    name = "simulated"

    def __init__(
        self,
        responses: Optional[List[Union[str, ProviderResponse, BaseException]]] = None,
        default: Union[str, Callable[[str], str]] = "Simulated response.",
        model: str = "simulated",
    ) -> None:
        self.responses = list(responses or [])
        self.default = default
        self.model = model
        self.prompts: List[str] = []

    async def complete(
        self, prompt: str, system_prompt: Optional[str] = None
    ) -> ProviderResponse:
        self.prompts.append(prompt)
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, ProviderResponse):
                return item
            return ProviderResponse(text=item, model=self.model)
        text = self.default(prompt) if callable(self.default) else self.default
        return ProviderResponse(text=text, model=self.model)
