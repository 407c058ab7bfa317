"""Security context for step execution."""

from __future__ import annotations

from typing import Optional, Set

from pydantic import BaseModel, Field


class SecurityContext(BaseModel):
    """Carries the identity a step is executed on behalf of.

    The context is derived from the run's ``requested_by`` user and the
    organization scope, and is evaluated by the security gate before every
    dispatch.
    """

    user_id: Optional[str] = Field(default=None, description="Acting user")
    organization_id: str = Field(..., description="Organization scope")
    permissions: Set[str] = Field(default_factory=set, description="Granted permissions")
