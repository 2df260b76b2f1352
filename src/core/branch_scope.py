from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from src.core.errors import ScopeResolutionError


@dataclass(frozen=True)
class BranchScope:
    """Tenant visibility for one metrics request.

    Every read against a branch-owned table goes through ``apply`` so the
    branch predicate cannot be skipped by individual calculators.
    """

    branch_id: Optional[str]
    is_super_admin: bool = False

    @property
    def label(self) -> str:
        return "all" if self.is_super_admin else str(self.branch_id)

    def apply(self, filters: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
        scoped = list(filters)
        if self.is_super_admin:
            return scoped
        if not self.branch_id:
            raise ScopeResolutionError("Branch scope is missing a branch id")
        scoped.append(("branch_id", f"eq.{self.branch_id}"))
        return scoped
