"""
Read-only collaborator ports: plan catalog and user directory.

Plan CRUD and user management live outside this service; the billing
use-cases only need pricing/credits and an existence check.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from domain.subscription.entity import Plan


@runtime_checkable
class PlanCatalog(Protocol):
    async def get_plan(self, plan_id: str) -> Optional[Plan]: ...


@runtime_checkable
class UserDirectory(Protocol):
    async def exists(self, user_id: str) -> bool: ...
