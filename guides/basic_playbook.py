"""Simple example showing a playbook run from start to finish."""

import asyncio

from playbook_orchestrator import (
    Dependency,
    OrchestratorConfig,
    OrchestratorDaemon,
    PlaybookDefinition,
    PlaybookLauncher,
    StepDefinition,
    WorkerType,
    build_registry,
    get_repository,
)


async def main():
    """Basic playbook example."""
    # In-memory repository unless DATABASE_URL is set
    repository = get_repository()
    config = OrchestratorConfig(polling_interval=0.1, permissions={"demo-user": ["*"]})
    daemon = OrchestratorDaemon(repository, build_registry(repository, config), config)
    launcher = PlaybookLauncher(repository, daemon=daemon)

    # Define playbook steps
    playbook = PlaybookDefinition(
        id="customer-onboarding",
        organization_id="org-demo",
        name="Customer onboarding",
        steps=[
            StepDefinition(
                sequence=1,
                name="validate-input",
                worker_type=WorkerType.SYSTEM,
                input_data={"customer_id": "${input.customer_id}", "plan": "${input.plan}"},
                config={"operation": "validate", "required_fields": ["customer_id", "plan"]},
            ),
            StepDefinition(
                sequence=2,
                name="create-account",
                worker_type=WorkerType.SYSTEM,
                dependencies=[Dependency(step_number=1)],
                input_data={"customer_id": "${input.customer_id}", "plan": "${input.plan}"},
                config={"operation": "create_record", "entity_type": "account"},
            ),
            StepDefinition(
                sequence=3,
                name="send-notification",
                worker_type=WorkerType.SYSTEM,
                dependencies=[Dependency(step_number=2)],
                config={
                    "operation": "notify",
                    "recipient": "${input.email}",
                    "subject": "Welcome to the ${input.plan} plan",
                    "message": "Your account ${steps.2.record_id} is ready.",
                },
            ),
        ],
    )

    await daemon.start()
    run = await launcher.start_run(
        playbook,
        {"customer_id": "cust-123", "plan": "premium", "email": "cust-123@example.com"},
        requested_by="demo-user",
    )

    while not (await repository.get_run(run.id)).is_terminal:
        await asyncio.sleep(0.1)
    await daemon.stop()

    run = await repository.get_run(run.id)
    print(f"✅ Playbook finished: {run.status.value}")
    print(f"📋 Correlation ID: {run.correlation_id}")
    for step in await repository.get_steps(run.id):
        print(f"🔗 {step.sequence} {step.name}: {step.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
