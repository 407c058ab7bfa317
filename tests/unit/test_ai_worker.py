import pytest
from pydantic_ai.models.test import TestModel

from playbook_orchestrator.contracts import WorkerType
from playbook_orchestrator.exceptions import ErrorCategory, ExecutionError
from playbook_orchestrator.workers import (
    AIWorker,
    ProviderResponse,
    PydanticAIProvider,
    SimulatedProvider,
    build_prompt,
    confidence_score,
)
from conftest import options, step_context, step_instance

LONG_ANSWER = "Approved: the applicant meets every published eligibility criterion."


def _ai_step(**config):
    config.setdefault("prompt", "Assess application from ${input.applicant}")
    return step_instance(sequence=2, worker_type=WorkerType.AI, config=config)


def test_confidence_score_heuristics():
    assert confidence_score(ProviderResponse(text=LONG_ANSWER)) == 0.8
    assert confidence_score(ProviderResponse(text="ok")) == 0.6
    assert confidence_score(ProviderResponse(text=LONG_ANSWER, finish_reason="length")) == 0.4
    hedged = ProviderResponse(text="I think it might be approved, I'm not sure.")
    assert confidence_score(hedged) == 0.5
    assert confidence_score(ProviderResponse(text='{"approved": true, "score": 0.92}'), True) == 0.9
    assert confidence_score(ProviderResponse(text=LONG_ANSWER), True) == 0.5
    assert confidence_score(ProviderResponse(text="x" * 201)) == 0.9


def test_build_prompt_appends_previous_outputs():
    context = step_context(
        run_input={"applicant": "Ada"},
        previous={1: {"valid": True}},
        names={1: "validate"},
    )
    prompt = build_prompt("Assess ${input.applicant}", context)
    assert prompt.startswith("Assess Ada")
    assert "Context from previous steps:" in prompt
    assert '- Step 1 (validate): {"valid": true}' in prompt
    assert build_prompt("Plain", step_context()) == "Plain"


@pytest.mark.asyncio
async def test_successful_completion_with_json_output():
    provider = SimulatedProvider(['```json\n{"approved": true, "reason": "complete"}\n```'])
    worker = AIWorker(provider)
    step = _ai_step(output_format="json")
    result = await worker.execute(step, step_context(run_input={"applicant": "Ada"}), options())

    assert result.success
    assert result.output_data["parsed"] == {"approved": True, "reason": "complete"}
    assert result.output_data["model"] == "simulated"
    assert result.worker_info["provider"] == "simulated"
    assert provider.prompts == ["Assess application from Ada"]


@pytest.mark.asyncio
async def test_fallback_provider_used_when_primary_fails():
    primary = SimulatedProvider([ExecutionError("upstream 503", network=True)])
    fallback = SimulatedProvider([LONG_ANSWER], model="backup")
    worker = AIWorker(primary, fallback)
    result = await worker.execute(_ai_step(), step_context(), options())
    assert result.success
    assert result.output_data["model"] == "backup"
    assert result.output_data["confidence"] == 0.8
    assert len(primary.prompts) == 1


@pytest.mark.asyncio
async def test_all_providers_failing_is_recoverable():
    primary = SimulatedProvider([RuntimeError("connection reset")])
    worker = AIWorker(primary)
    result = await worker.execute(_ai_step(), step_context(), options())
    assert not result.success
    assert result.error.category == ErrorCategory.EXECUTION
    assert result.error.recoverable


@pytest.mark.asyncio
async def test_low_confidence_fails_without_retry():
    worker = AIWorker(SimulatedProvider(["maybe"]), min_confidence=0.7)
    result = await worker.execute(_ai_step(), step_context(), options())
    assert not result.success
    assert not result.error.recoverable
    assert result.error.details == {"confidence": 0.6, "threshold": 0.7}

    # step-level threshold overrides the worker default
    worker = AIWorker(SimulatedProvider(["maybe"]), min_confidence=0.7)
    result = await worker.execute(_ai_step(min_confidence=0.5), step_context(), options())
    assert result.success


@pytest.mark.asyncio
async def test_missing_prompt_is_validation_failure():
    worker = AIWorker(SimulatedProvider())
    step = step_instance(worker_type=WorkerType.AI)
    result = await worker.execute(step, step_context(), options())
    assert not result.success
    assert result.error.category == ErrorCategory.VALIDATION


@pytest.mark.asyncio
async def test_pydantic_ai_provider_with_test_model():
    provider = PydanticAIProvider(TestModel(custom_output_text=LONG_ANSWER))
    response = await provider.complete("Assess Ada", system_prompt="Be brief.")
    assert response.text == LONG_ANSWER
    assert response.model == "test"

    worker = AIWorker(provider)
    result = await worker.execute(_ai_step(), step_context(run_input={"applicant": "Ada"}), options())
    assert result.success
    assert result.output_data["response"] == LONG_ANSWER
    assert result.worker_info["provider"] == "pydantic_ai"
