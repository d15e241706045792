from __future__ import annotations

import logging

from librarian.metrics import observe_policy_decision, observe_referential_gap
from librarian.platform.security.context import Principal
from librarian.platform.security.errors import ReferentialGap
from librarian.platform.security.policies import (
    Decision,
    Entity,
    Operation,
    Policy,
    PolicyRegistry,
    Row,
    build_policy_registry,
)
from librarian.platform.security.relationships import RelationshipIndex


logger = logging.getLogger("librarian.security")


class PolicyEvaluator:
    """Combines the registered policies for an entity and operation with OR semantics.

    A row is visible or writable when any single policy grants it. For
    updates, each policy's ``using`` and ``with_check`` must both pass for
    that same policy; a grant from one policy's ``using`` never combines with
    another policy's ``with_check``. Evaluation keeps no state between calls.
    """

    def __init__(self, registry: PolicyRegistry | None = None) -> None:
        self._registry = registry or build_policy_registry()

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry

    def evaluate(
        self,
        principal: Principal,
        entity: Entity,
        operation: Operation,
        row: Row,
        proposed: Row | None = None,
        *,
        index: RelationshipIndex,
    ) -> Decision:
        granted = self.explain(principal, entity, operation, row, proposed, index=index)
        decision = Decision.ALLOW if granted else Decision.DENY
        observe_policy_decision(entity=entity.value, operation=operation.value, decision=decision.value)
        return decision

    def is_allowed(
        self,
        principal: Principal,
        entity: Entity,
        operation: Operation,
        row: Row,
        proposed: Row | None = None,
        *,
        index: RelationshipIndex,
    ) -> bool:
        return self.evaluate(principal, entity, operation, row, proposed, index=index) == Decision.ALLOW

    def explain(
        self,
        principal: Principal,
        entity: Entity,
        operation: Operation,
        row: Row,
        proposed: Row | None = None,
        *,
        index: RelationshipIndex,
    ) -> list[str]:
        """Return the names of every policy that grants the operation."""

        return [
            policy.name
            for policy in self._registry.policies_for(entity, operation)
            if self._policy_grants(policy, principal, operation, row, proposed, index)
        ]

    def admits_target(
        self,
        principal: Principal,
        entity: Entity,
        operation: Operation,
        row: Row,
        *,
        index: RelationshipIndex,
    ) -> bool:
        """True when some policy's ``using`` clause lets ``row`` be updated or deleted.

        Only the existing row is checked. The write itself is evaluated in
        full, proposed row included, when it is performed.
        """

        return any(
            self._policy_grants(policy, principal, operation, row, None, index, using_only=True)
            for policy in self._registry.policies_for(entity, operation)
        )

    def _policy_grants(
        self,
        policy: Policy,
        principal: Principal,
        operation: Operation,
        row: Row,
        proposed: Row | None,
        index: RelationshipIndex,
        using_only: bool = False,
    ) -> bool:
        try:
            if operation == Operation.INSERT:
                return policy.check_proposed(principal, proposed if proposed is not None else row, index)
            if operation == Operation.UPDATE:
                if not policy.check_existing(principal, row, index):
                    return False
                if using_only:
                    return True
                return policy.check_proposed(principal, proposed if proposed is not None else row, index)
            return policy.check_existing(principal, row, index)
        except ReferentialGap as exc:
            observe_referential_gap(entity=policy.entity.value)
            logger.warning(
                "policy.referential_gap",
                extra={
                    "entity": policy.entity.value,
                    "operation": operation.value,
                    "policy": policy.name,
                    "user_id": principal.label(),
                    "error": str(exc),
                },
            )
            return False
