"""Permission policy for step execution."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set

from ..contracts import WorkerType
from .context import SecurityContext

WORKER_TYPE_PERMISSIONS: Dict[WorkerType, str] = {
    WorkerType.SYSTEM: "playbook.execute.system",
    WorkerType.HUMAN: "playbook.execute.human",
    WorkerType.AI: "playbook.execute.ai",
    WorkerType.EXTERNAL: "playbook.execute.external",
}

# Grants every permission.
WILDCARD_PERMISSION = "*"


class PermissionProvider(Protocol):
    """Looks up the permissions granted to a user within an organization."""

    async def get_permissions(
        self, user_id: Optional[str], organization_id: str
    ) -> Set[str]:
        ...


class StaticPermissionProvider:
    """Permission grants from configuration, keyed by user id.

    Keys of the form ``<organization>:<user>`` take precedence over plain
    user ids. Runs without a requesting user fall back to the ``system``
    entry.
    """

    def __init__(self, grants: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._grants: Dict[str, Set[str]] = {
            k: set(v) for k, v in (grants or {}).items()
        }

    def grant(self, user_id: str, *permissions: str) -> None:
        self._grants.setdefault(user_id, set()).update(permissions)

    async def get_permissions(
        self, user_id: Optional[str], organization_id: str
    ) -> Set[str]:
        user = user_id or "system"
        scoped = self._grants.get(f"{organization_id}:{user}")
        if scoped is not None:
            return set(scoped)
        return set(self._grants.get(user, set()))


class PolicyEngine:
    """Evaluates which permissions a step execution needs."""

    def required_permissions(
        self, worker_type: WorkerType, declared: Iterable[str] = ()
    ) -> Set[str]:
        """Union of the declared permissions and the worker-type permission."""
        return set(declared) | {WORKER_TYPE_PERMISSIONS[worker_type]}

    def missing_permissions(
        self, context: SecurityContext, required: Iterable[str]
    ) -> List[str]:
        if WILDCARD_PERMISSION in context.permissions:
            return []
        return sorted(set(required) - context.permissions)

    async def evaluate(
        self, context: SecurityContext, worker_type: WorkerType, declared: Iterable[str] = ()
    ) -> bool:
        """Return ``True`` if ``context`` may execute a step of ``worker_type``."""
        required = self.required_permissions(worker_type, declared)
        return not self.missing_permissions(context, required)
