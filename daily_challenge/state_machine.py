"""Daily challenge status machine.

States: active → ended → winner_selected
There is no way back and no way out of winner_selected.
"""

from daily_challenge.constants import ChallengeStatus


class ChallengeStateError(Exception):
    """Raised when an invalid challenge state transition is attempted."""

    def __init__(self, current: str, target: str, allowed: list[str]):
        super().__init__(
            f"Cannot transition challenge from '{current}' to '{target}'. "
            f"Allowed from '{current}': {allowed}"
        )
        self.current = current
        self.target = target


VALID_TRANSITIONS: dict[str, list[str]] = {
    ChallengeStatus.active.value: [ChallengeStatus.ended.value],
    ChallengeStatus.ended.value: [ChallengeStatus.winner_selected.value],
    ChallengeStatus.winner_selected.value: [],  # terminal
}


def _value(status: str | ChallengeStatus) -> str:
    return status.value if isinstance(status, ChallengeStatus) else status


def can_transition(current: str | ChallengeStatus, target: str | ChallengeStatus) -> bool:
    """Check if a challenge status transition is valid."""
    return _value(target) in VALID_TRANSITIONS.get(_value(current), [])


def validate_transition(
    current: str | ChallengeStatus, target: str | ChallengeStatus
) -> None:
    """Validate a status transition, raising ChallengeStateError if invalid."""
    if not can_transition(current, target):
        current_value = _value(current)
        raise ChallengeStateError(
            current_value,
            _value(target),
            VALID_TRANSITIONS.get(current_value, []),
        )


def is_terminal(status: str | ChallengeStatus) -> bool:
    return not VALID_TRANSITIONS.get(_value(status), [])
