"""Permission gate - default-deny read access to comparisons.

Only grants are stored; absence of a grant means the learner cannot view.
Grant and revoke are idempotent and restricted to the comparison's creator.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable

from mapcompare.errors import ComparisonNotFound, PermissionDenied
from mapcompare.models import Caller, Comparison, Permission, Role
from mapcompare.store import Store

logger = logging.getLogger(__name__)


class PermissionGate:
    def __init__(self, store: Store):
        self.store = store

    def can_view(self, comparison_id: str, user_id: str, role: Role) -> bool:
        """True for instructors, the creator, or a learner holding a grant."""
        comparison = self.store.get_comparison(comparison_id)
        if comparison is None:
            return False
        if role == Role.INSTRUCTOR or comparison.created_by == user_id:
            return True
        return self.store.get_permission(comparison_id, user_id) is not None

    def grant(self, comparison_id: str, student_id: str, caller: Caller) -> Permission:
        """Grant view access; granting twice returns the existing record."""
        self._require_creator(comparison_id, caller)

        existing = self.store.get_permission(comparison_id, student_id)
        if existing is not None:
            return existing

        permission = self.store.add_permission(
            Permission(
                comparison_id=comparison_id,
                student_id=student_id,
                granted_by=caller.user_id,
                granted_at=datetime.now(timezone.utc),
            )
        )
        logger.info("Granted %s access to comparison %s", student_id, comparison_id)
        return permission

    def revoke(self, comparison_id: str, student_id: str, caller: Caller) -> None:
        """Revoke view access; revoking an absent grant is a no-op."""
        self._require_creator(comparison_id, caller)

        if self.store.get_permission(comparison_id, student_id) is None:
            return
        self.store.delete_permission(comparison_id, student_id)
        logger.info("Revoked %s access to comparison %s", student_id, comparison_id)

    def grant_many(
        self, comparison_id: str, student_ids: Iterable[str], caller: Caller
    ) -> list[Permission]:
        self._require_creator(comparison_id, caller)
        return [self.grant(comparison_id, sid, caller) for sid in student_ids]

    def revoke_many(self, comparison_id: str, student_ids: Iterable[str], caller: Caller) -> None:
        self._require_creator(comparison_id, caller)
        for sid in student_ids:
            self.revoke(comparison_id, sid, caller)

    def permissions_for_comparison(self, comparison_id: str, caller: Caller) -> list[Permission]:
        self._require_creator(comparison_id, caller)
        return self.store.permissions_by_comparison(comparison_id)

    def permissions_for_student(self, student_id: str) -> list[Permission]:
        return self.store.permissions_by_student(student_id)

    def _require_creator(self, comparison_id: str, caller: Caller) -> Comparison:
        comparison = self.store.get_comparison(comparison_id)
        if comparison is None:
            raise ComparisonNotFound(
                f"Comparison not found: {comparison_id}",
                comparison_id=comparison_id,
            )
        if comparison.created_by != caller.user_id:
            raise PermissionDenied(
                "Only the comparison creator can manage permissions",
                reason="creator_required",
                comparison_id=comparison_id,
            )
        return comparison
