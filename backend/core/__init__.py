"""
Core services for the interaction client.
- InteractionStore: optimistic likes and comments reconciled with the backend
- StatsRefresher: background service keeping watched entity stats fresh

Architecture:
- Local state is advisory; server values always win once they arrive
- Every local mutation bumps a version so older refreshes are discarded
- Confirmed counters are persisted to the counter shadow for the next mount
"""

from .interactions import (
    InteractionConfig,
    InteractionState,
    InteractionSnapshot,
    InteractionStore,
    ToggleOutcome,
    CommentOutcome,
    FEATURE_CONFIGS,
    COMMENT_ERROR_MESSAGES,
    LIKE_FAILED_MESSAGE,
    LOGIN_REQUIRED_MESSAGE,
)
from .refresher import StatsRefresher, STATS_POLL_CATEGORY

__all__ = [
    "InteractionConfig",
    "InteractionState",
    "InteractionSnapshot",
    "InteractionStore",
    "ToggleOutcome",
    "CommentOutcome",
    "FEATURE_CONFIGS",
    "COMMENT_ERROR_MESSAGES",
    "LIKE_FAILED_MESSAGE",
    "LOGIN_REQUIRED_MESSAGE",
    "StatsRefresher",
    "STATS_POLL_CATEGORY",
]
