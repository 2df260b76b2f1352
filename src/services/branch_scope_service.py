from __future__ import annotations

import logging
from typing import FrozenSet, Optional

from src.core.branch_scope import BranchScope
from src.core.config import get_super_scope_roles
from src.core.errors import ScopeResolutionError
from src.repositories.guides_repository import GuidesRepository

logger = logging.getLogger(__name__)


class BranchScopeResolver:
    def __init__(
        self,
        repository: GuidesRepository,
        super_scope_roles: Optional[FrozenSet[str]] = None,
    ) -> None:
        self.repository = repository
        self.super_scope_roles = (
            super_scope_roles if super_scope_roles is not None else get_super_scope_roles()
        )

    def resolve(self, guide_id: str) -> BranchScope:
        guide = self.repository.get_guide_scope(guide_id)
        if guide is None:
            raise ScopeResolutionError("Guide not found for branch scope", guide_id=guide_id)
        if guide.role and guide.role in self.super_scope_roles:
            return BranchScope(branch_id=guide.branch_id, is_super_admin=True)
        if not guide.branch_id:
            logger.warning("Guide %s has no branch; refusing unscoped metrics read", guide_id)
            raise ScopeResolutionError("Guide is not assigned to a branch", guide_id=guide_id)
        return BranchScope(branch_id=guide.branch_id)
