from librarian.platform.security.context import Principal, ScopedContext, bind_principal, current_principal
from librarian.platform.security.errors import (
    AuthorizationDenied,
    AuthorizationError,
    InvalidStateTransition,
    PrincipalUnbound,
    ReferentialGap,
)
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.gateway import AuthorizedSession, QueryGateway, authorized_query, build_gateway
from librarian.platform.security.policies import (
    Decision,
    Entity,
    Operation,
    Policy,
    PolicyRegistry,
    build_policy_registry,
)
from librarian.platform.security.relationships import RelationshipIndex
from librarian.platform.security.repository import BaseRepository

__all__ = [
    "AuthorizationDenied",
    "AuthorizationError",
    "AuthorizedSession",
    "BaseRepository",
    "Decision",
    "Entity",
    "InvalidStateTransition",
    "Operation",
    "Policy",
    "PolicyEvaluator",
    "PolicyRegistry",
    "Principal",
    "PrincipalUnbound",
    "QueryGateway",
    "ReferentialGap",
    "RelationshipIndex",
    "ScopedContext",
    "authorized_query",
    "bind_principal",
    "build_gateway",
    "build_policy_registry",
    "current_principal",
]
