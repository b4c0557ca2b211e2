"""Lifecycle state machine for per-agent environment handles.

Illegal transitions raise immediately.
"""

from __future__ import annotations

from enum import StrEnum


class EnvironmentState(StrEnum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STALE = "stale"
    RECREATING = "recreating"


_ALLOWED: set[tuple[EnvironmentState, EnvironmentState]] = {
    (EnvironmentState.ABSENT, EnvironmentState.CONNECTING),
    (EnvironmentState.STALE, EnvironmentState.RECREATING),
    (EnvironmentState.ACTIVE, EnvironmentState.RECREATING),
    (EnvironmentState.CONNECTING, EnvironmentState.ACTIVE),
    (EnvironmentState.RECREATING, EnvironmentState.ACTIVE),
    (EnvironmentState.ACTIVE, EnvironmentState.STALE),
    # Creation failed; the next acquire starts over.
    (EnvironmentState.CONNECTING, EnvironmentState.ABSENT),
    (EnvironmentState.RECREATING, EnvironmentState.STALE),
    # Teardown.
    (EnvironmentState.ACTIVE, EnvironmentState.ABSENT),
    (EnvironmentState.STALE, EnvironmentState.ABSENT),
}


def assert_environment_transition(
    current: EnvironmentState | None,
    target: EnvironmentState,
    *,
    reason: str,
) -> None:
    if current is None:
        current = EnvironmentState.ABSENT
    if current == target:
        return
    if (current, target) not in _ALLOWED:
        raise RuntimeError(f"Illegal environment transition: {current} -> {target} ({reason})")
