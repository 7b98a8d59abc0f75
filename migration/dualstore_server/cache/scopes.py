"""
Cache scopes and the scopes each mutation kind invalidates.

A scope names a family of cached read results (one route, or one view)
for a user. A mutation invalidates every scope whose results it can
change, for every affected user.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from ..errors import ValidationError


class CacheScope(str, Enum):
    EXPENSES = "expenses"
    FRIENDS = "friends"
    GROUPS = "groups"
    ACTIVITIES = "activities"
    DASHBOARD_ACTIVITY = "dashboard-activity"
    FRIEND_TRANSACTIONS = "friend-transactions"
    FRIEND_DETAILS = "friend-details"
    USER_BALANCE = "user-balance"
    ANALYTICS = "analytics"
    SETTLEMENTS = "settlements"
    NOTIFICATIONS = "notifications"
    PROFILE = "profile"


class MutationKind(str, Enum):
    EXPENSE = "expense"
    SETTLEMENT = "settlement"
    FRIEND = "friend"
    GROUP = "group"
    PROFILE = "profile"
    NOTIFICATION = "notification"

    @classmethod
    def parse(cls, value: Any) -> MutationKind:
        """Parse a mutation kind name.

        Raises:
            ValidationError: If the value is not a known kind
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValidationError(
                f"Unknown mutation kind {value!r}. Must be one of: {allowed}",
                field_name="mutation",
                value=value,
            )


EXPENSE_MUTATION_SCOPES = frozenset({
    CacheScope.EXPENSES,
    CacheScope.FRIENDS,
    CacheScope.GROUPS,
    CacheScope.ACTIVITIES,
    CacheScope.DASHBOARD_ACTIVITY,
    CacheScope.FRIEND_TRANSACTIONS,
    CacheScope.FRIEND_DETAILS,
    CacheScope.USER_BALANCE,
    CacheScope.ANALYTICS,
})

SETTLEMENT_MUTATION_SCOPES = EXPENSE_MUTATION_SCOPES | {CacheScope.SETTLEMENTS}

FRIEND_MUTATION_SCOPES = frozenset({
    CacheScope.FRIENDS,
    CacheScope.GROUPS,
    CacheScope.ACTIVITIES,
    CacheScope.DASHBOARD_ACTIVITY,
    CacheScope.FRIEND_TRANSACTIONS,
    CacheScope.FRIEND_DETAILS,
    CacheScope.USER_BALANCE,
    CacheScope.SETTLEMENTS,
    CacheScope.ANALYTICS,
})

GROUP_MUTATION_SCOPES = frozenset({
    CacheScope.GROUPS,
    CacheScope.EXPENSES,
    CacheScope.ACTIVITIES,
    CacheScope.DASHBOARD_ACTIVITY,
    CacheScope.FRIEND_DETAILS,
    CacheScope.USER_BALANCE,
    CacheScope.ANALYTICS,
})

# Profile fields (name, avatar) are embedded in friend and group views.
PROFILE_MUTATION_SCOPES = frozenset({
    CacheScope.PROFILE,
    CacheScope.FRIENDS,
    CacheScope.FRIEND_DETAILS,
    CacheScope.GROUPS,
})

NOTIFICATION_MUTATION_SCOPES = frozenset({CacheScope.NOTIFICATIONS})

_SCOPES_BY_KIND: dict[MutationKind, frozenset[CacheScope]] = {
    MutationKind.EXPENSE: EXPENSE_MUTATION_SCOPES,
    MutationKind.SETTLEMENT: SETTLEMENT_MUTATION_SCOPES,
    MutationKind.FRIEND: FRIEND_MUTATION_SCOPES,
    MutationKind.GROUP: GROUP_MUTATION_SCOPES,
    MutationKind.PROFILE: PROFILE_MUTATION_SCOPES,
    MutationKind.NOTIFICATION: NOTIFICATION_MUTATION_SCOPES,
}


def scopes_for(kind: MutationKind | str) -> frozenset[CacheScope]:
    """Scopes a mutation of the given kind invalidates."""
    return _SCOPES_BY_KIND[MutationKind.parse(kind)]


# Seconds a cached result lives, per scope.
CACHE_TTL_SECONDS: dict[CacheScope, int] = {
    CacheScope.EXPENSES: 180,
    CacheScope.FRIENDS: 180,
    CacheScope.GROUPS: 180,
    CacheScope.ACTIVITIES: 120,
    CacheScope.DASHBOARD_ACTIVITY: 120,
    CacheScope.FRIEND_TRANSACTIONS: 180,
    CacheScope.FRIEND_DETAILS: 180,
    CacheScope.USER_BALANCE: 120,
    CacheScope.ANALYTICS: 180,
    CacheScope.SETTLEMENTS: 180,
    CacheScope.NOTIFICATIONS: 60,
    CacheScope.PROFILE: 300,
}


def ttl_for(scope: CacheScope | str) -> int:
    """TTL in seconds for a scope, 120 for unknown scopes."""
    try:
        return CACHE_TTL_SECONDS[CacheScope(scope)]
    except ValueError:
        return 120
