"""AI steps: prompt assembly, provider fallback and confidence scoring."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

from ..contracts import ExecutionOptions, StepContext, WorkerResult, WorkerType
from ..exceptions import ExecutionError, OrchestratorError, ValidationError
from ..persistence.models import StepInstance
from ..templating import render
from .base import WorkerHandler, elapsed_ms
from .providers import AIProvider, ProviderResponse

logger = logging.getLogger(__name__)

HEDGING_PHRASES = (
    "i'm not sure",
    "i am not sure",
    "i think",
    "possibly",
    "it is unclear",
    "cannot determine",
    "might be",
    "as an ai",
)


def parse_json(text: str) -> Any:
    """Parse ``text`` as JSON, tolerating a surrounding markdown fence."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.startswith("json"):
            stripped = stripped[4:]
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def confidence_score(response: ProviderResponse, expect_json: bool = False) -> float:
    """Heuristic confidence in ``[0, 1]`` from response characteristics."""
    score = 0.6
    if response.finish_reason == "stop":
        score += 0.2
    elif response.finish_reason == "length":
        score -= 0.2

    text = response.text.strip()
    if len(text) < 20:
        score -= 0.2
    elif len(text) > 200:
        score += 0.1

    lowered = text.lower()
    hedges = sum(1 for phrase in HEDGING_PHRASES if phrase in lowered)
    score -= min(0.3, 0.1 * hedges)

    if expect_json:
        score += 0.1 if parse_json(text) is not None else -0.3
    return round(max(0.0, min(1.0, score)), 3)


def build_prompt(template: str, context: StepContext) -> str:
    """Render ``template`` and append the outputs of earlier steps."""
    prompt = str(render(template, context.template_scope()))
    if not context.previous_outputs:
        return prompt
    lines = ["", "Context from previous steps:"]
    for sequence in sorted(context.previous_outputs):
        name = context.step_names.get(sequence, f"step {sequence}")
        output = json.dumps(context.previous_outputs[sequence], sort_keys=True, default=str)
        lines.append(f"- Step {sequence} ({name}): {output}")
    return prompt + "\n" + "\n".join(lines)


class AIWorker(WorkerHandler):
    """Calls the primary provider, then the fallback provider on failure."""

    worker_type = WorkerType.AI

    def __init__(
        self,
        primary: AIProvider,
        fallback: Optional[AIProvider] = None,
        min_confidence: float = 0.0,
        system_prompt: Optional[str] = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.min_confidence = min_confidence
        self.system_prompt = system_prompt

    async def execute(
        self, step: StepInstance, context: StepContext, options: ExecutionOptions
    ) -> WorkerResult:
        started = time.monotonic()
        template = step.config.get("prompt") or step.input_data.get("prompt")
        if not template:
            return WorkerResult.failure(
                ValidationError(f"AI step {step.sequence} has no prompt"), elapsed_ms(started)
            )
        prompt = build_prompt(template, context)
        system_prompt = step.config.get("system_prompt", self.system_prompt)
        expect_json = step.config.get("output_format") == "json"

        response, provider, error = await self._complete(prompt, system_prompt)
        info = {"attempt": options.attempt}
        if response is None:
            return WorkerResult.failure(error, elapsed_ms(started), **info)
        info.update(provider=provider.name, model=response.model, tokens_used=response.tokens_used)

        confidence = confidence_score(response, expect_json)
        threshold = float(step.config.get("min_confidence", self.min_confidence))
        if confidence < threshold:
            return WorkerResult.failure(
                ExecutionError(
                    f"Confidence {confidence} below threshold {threshold}",
                    {"confidence": confidence, "threshold": threshold},
                ),
                elapsed_ms(started),
                **info,
            )

        output = {"response": response.text, "confidence": confidence, "model": response.model}
        if expect_json:
            output["parsed"] = parse_json(response.text)
        return WorkerResult(
            success=True, output_data=output, duration_ms=elapsed_ms(started), worker_info=info
        )

    async def _complete(self, prompt: str, system_prompt: Optional[str]):
        providers = [p for p in (self.primary, self.fallback) if p is not None]
        error: Optional[OrchestratorError] = None
        for provider in providers:
            try:
                return await provider.complete(prompt, system_prompt), provider, None
            except OrchestratorError as exc:
                error = exc
            except Exception as exc:
                error = ExecutionError(f"{provider.name} failed: {exc}", network=True)
            logger.warning(f"AI provider {provider.name} failed: {error.message}")
        return None, None, error
