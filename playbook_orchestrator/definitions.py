"""Loading and validation of playbook definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .contracts import PlaybookDefinition
from .exceptions import ConfigurationError, ValidationError
from .resolver import validate_dependencies
from .workers.registry import WorkerRegistry

logger = logging.getLogger(__name__)


def parse_playbook(data: Dict[str, Any]) -> PlaybookDefinition:
    """Build a :class:`PlaybookDefinition` from a raw mapping.

    Unknown worker types raise :class:`ConfigurationError`; any other
    malformed field raises :class:`ValidationError`.
    """
    if not isinstance(data, dict):
        raise ValidationError("Playbook definition must be a mapping")
    try:
        return PlaybookDefinition(**data)
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        details = {"errors": errors}
        if any("worker_type" in err.get("loc", ()) for err in errors):
            raise ConfigurationError(
                f"Playbook {data.get('id', '?')} uses an unknown worker type", details
            ) from exc
        raise ValidationError(
            f"Invalid playbook {data.get('id', '?')}: {exc.error_count()} error(s)", details
        ) from exc


def load_playbook(path: Union[str, Path]) -> PlaybookDefinition:
    """Load a playbook definition from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    definition = parse_playbook(data)
    logger.debug(f"Loaded playbook {definition.id} v{definition.version} from {path}")
    return definition


def validate_definition(
    definition: PlaybookDefinition, registry: Optional[WorkerRegistry] = None
) -> PlaybookDefinition:
    """Check the step graph and, given a registry, the worker configuration."""
    if not definition.steps:
        raise ValidationError(f"Playbook {definition.id} has no steps")
    validate_dependencies(definition.steps)
    if registry is not None:
        registry.validate_definition(definition)
    return definition
