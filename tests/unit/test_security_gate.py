import pytest

from playbook_orchestrator.config import RateLimitRule
from playbook_orchestrator.contracts import RunStatus, StepStatus, WorkerType
from playbook_orchestrator.exceptions import PermissionDeniedError, RateLimitError
from playbook_orchestrator.persistence.models import Run, StepInstance
from playbook_orchestrator.security import (
    AuditLog,
    PolicyEngine,
    SecurityContext,
    SecurityGate,
    StaticPermissionProvider,
    StepRateLimiter,
)


def _run(user="alice"):
    return Run(
        playbook_id="pb",
        organization_id="org-1",
        status=RunStatus.IN_PROGRESS,
        requested_by=user,
    )


def _step(worker_type=WorkerType.EXTERNAL, required_permissions=()):
    return StepInstance(
        run_id="run-1",
        organization_id="org-1",
        sequence=1,
        name="call",
        worker_type=worker_type,
        status=StepStatus.IN_PROGRESS,
        required_permissions=list(required_permissions),
    )


@pytest.mark.asyncio
async def test_denial_lists_missing_permissions_and_is_audited(repo, clock):
    provider = StaticPermissionProvider({"alice": ["playbook.execute.external"]})
    gate = SecurityGate(provider, AuditLog(repo, clock=clock))
    step = _step(required_permissions=["crm.write", "billing.read"])
    run = _run()

    decision = await gate.check(step, run)
    assert not decision.allowed
    assert decision.missing_permissions == ["billing.read", "crm.write"]

    error = decision.to_exception()
    assert isinstance(error, PermissionDeniedError)
    assert error.missing_permissions == ["billing.read", "crm.write"]

    entries = await repo.list_audit_entries(event="permission_check")
    assert len(entries) == 1
    assert entries[0].outcome == "denied"
    assert entries[0].user_id == "alice"
    assert entries[0].worker_type == "external"
    assert entries[0].details["missing_permissions"] == ["billing.read", "crm.write"]


@pytest.mark.asyncio
async def test_allowed_check_is_audited_too(repo, clock):
    provider = StaticPermissionProvider({"alice": ["playbook.execute.system"]})
    gate = SecurityGate(provider, AuditLog(repo, clock=clock))
    decision = await gate.check(_step(WorkerType.SYSTEM), _run())
    assert decision.allowed
    assert decision.to_exception() is None
    entries = await repo.list_audit_entries(event="permission_check")
    assert [e.outcome for e in entries] == ["allowed"]


@pytest.mark.asyncio
async def test_wildcard_and_org_scoped_grants(repo):
    provider = StaticPermissionProvider(
        {"alice": ["*"], "org-2:alice": ["playbook.execute.system"]}
    )
    gate = SecurityGate(provider, AuditLog(repo))
    assert (await gate.check(_step(required_permissions=["x"]), _run())).allowed

    other_org = _run()
    other_org.organization_id = "org-2"
    assert not (await gate.check(_step(), other_org)).allowed


@pytest.mark.asyncio
async def test_runs_without_user_use_system_grants(repo):
    provider = StaticPermissionProvider()
    provider.grant("system", "playbook.execute.external")
    gate = SecurityGate(provider, AuditLog(repo))
    assert (await gate.check(_step(), _run(user=None))).allowed


@pytest.mark.asyncio
async def test_rate_limit_denial_is_distinct_and_window_rolls(repo, clock):
    limiter = StepRateLimiter(
        {WorkerType.EXTERNAL: RateLimitRule(max_executions=2, window_seconds=60)},
        clock=clock,
    )
    provider = StaticPermissionProvider({"alice": ["*"]})
    gate = SecurityGate(provider, AuditLog(repo, clock=clock), rate_limiter=limiter)
    run, step = _run(), _step()

    assert (await gate.check(step, run)).allowed
    clock.advance(10)
    assert (await gate.check(step, run)).allowed

    decision = await gate.check(step, run)
    assert not decision.allowed
    assert decision.rate_limited
    assert decision.missing_permissions == []
    assert isinstance(decision.to_exception(), RateLimitError)

    rate_entries = await repo.list_audit_entries(event="rate_limit")
    assert len(rate_entries) == 1
    assert rate_entries[0].details["max_executions"] == 2

    # the first slot leaves the window
    clock.advance(51)
    assert (await gate.check(step, run)).allowed


@pytest.mark.asyncio
async def test_rate_limits_are_per_user_and_worker_type(clock):
    limiter = StepRateLimiter(
        {WorkerType.AI: RateLimitRule(max_executions=1, window_seconds=60)}, clock=clock
    )
    assert await limiter.try_acquire("alice", WorkerType.AI)
    assert not await limiter.try_acquire("alice", WorkerType.AI)
    assert await limiter.try_acquire("bob", WorkerType.AI)
    assert await limiter.try_acquire("alice", WorkerType.SYSTEM)
    # no rule means no limit
    assert await limiter.try_acquire("alice", WorkerType.SYSTEM)


@pytest.mark.asyncio
async def test_denial_converts_to_permission_error(repo):
    gate = SecurityGate(StaticPermissionProvider(), AuditLog(repo))
    decision = await gate.check(_step(WorkerType.HUMAN), _run())
    error = decision.to_exception()
    assert isinstance(error, PermissionDeniedError)
    assert error.missing_permissions == ["playbook.execute.human"]


@pytest.mark.asyncio
async def test_policy_engine_evaluate():
    policy = PolicyEngine()
    context = SecurityContext(
        user_id="alice", organization_id="org-1", permissions={"playbook.execute.ai"}
    )
    assert await policy.evaluate(context, WorkerType.AI)
    assert not await policy.evaluate(context, WorkerType.AI, ["models.gpt"])
    assert policy.required_permissions(WorkerType.AI, ["models.gpt"]) == {
        "playbook.execute.ai",
        "models.gpt",
    }
