import textwrap

import pytest

from playbook_orchestrator.contracts import WorkerType
from playbook_orchestrator.definitions import load_playbook, parse_playbook, validate_definition
from playbook_orchestrator.exceptions import ConfigurationError, ValidationError
from playbook_orchestrator.workers import build_registry

PLAYBOOK_YAML = textwrap.dedent(
    """
    id: grant-application
    organization_id: org-1
    name: Grant application intake
    version: 2.1.0
    steps:
      - sequence: 1
        name: validate
        worker_type: system
        config:
          operation: validate
          required_fields: [applicant, amount]
      - sequence: 2
        name: review
        worker_type: human
        dependencies:
          - step_number: 1
        config:
          assignment_strategy: round_robin
          candidates: [bob, carol]
      - sequence: 3
        name: score
        worker_type: ai
        dependencies:
          - {step_number: 1, kind: Sequential}
        config:
          prompt: Score ${input.applicant}
      - sequence: 4
        name: submit
        worker_type: external
        required_permissions: [grants.submit]
        dependencies:
          - {step_number: 2}
          - {step_number: 3, kind: any}
        config:
          url: https://grants.example.com/api/applications
          method: POST
    """
)


def test_load_playbook_from_yaml(tmp_path, repo):
    path = tmp_path / "grant.yaml"
    path.write_text(PLAYBOOK_YAML)
    definition = load_playbook(path)

    assert definition.id == "grant-application"
    assert definition.version == "2.1.0"
    assert [s.worker_type for s in definition.steps] == [
        WorkerType.SYSTEM,
        WorkerType.HUMAN,
        WorkerType.AI,
        WorkerType.EXTERNAL,
    ]
    assert definition.steps[2].dependencies[0].kind == "sequential"
    assert definition.step(4).required_permissions == ["grants.submit"]
    assert validate_definition(definition, build_registry(repo)) is definition


def test_unknown_worker_type_is_configuration_error():
    with pytest.raises(ConfigurationError):
        parse_playbook(
            {
                "id": "pb",
                "organization_id": "org-1",
                "name": "x",
                "steps": [{"sequence": 1, "name": "a", "worker_type": "telepathy"}],
            }
        )


def test_malformed_fields_are_validation_errors():
    with pytest.raises(ValidationError) as exc_info:
        parse_playbook({"id": "pb", "name": "x"})
    assert not isinstance(exc_info.value, ConfigurationError)
    with pytest.raises(ValidationError):
        parse_playbook(["not", "a", "mapping"])


@pytest.mark.parametrize(
    "steps",
    [
        [],
        [
            {"sequence": 1, "name": "a", "worker_type": "system"},
            {"sequence": 1, "name": "b", "worker_type": "system"},
        ],
        [
            {"sequence": 1, "name": "a", "worker_type": "system"},
            {"sequence": 3, "name": "b", "worker_type": "system"},
        ],
        [
            {"sequence": 1, "name": "a", "worker_type": "system", "dependencies": [{"step_number": 2}]},
            {"sequence": 2, "name": "b", "worker_type": "system"},
        ],
    ],
)
def test_bad_step_graphs_rejected(steps):
    definition = parse_playbook({"id": "pb", "organization_id": "org-1", "name": "x", "steps": steps})
    with pytest.raises(ValidationError):
        validate_definition(definition)


def test_registry_checks_worker_configuration(repo):
    registry = build_registry(repo)
    definition = parse_playbook(
        {
            "id": "pb",
            "organization_id": "org-1",
            "name": "x",
            "steps": [{"sequence": 1, "name": "call", "worker_type": "external", "config": {}}],
        }
    )
    validate_definition(definition)
    with pytest.raises(ConfigurationError):
        validate_definition(definition, registry)
