"""
Exception types shared across session, action and API layers.

Kept in internal_core so the session controller and the action lifecycle
can raise and catch the same types without importing each other.
"""


class TransportError(Exception):
    """Raised when the realtime connection cannot be opened or is lost."""


class SessionStateError(Exception):
    """Raised when a session operation is requested in the wrong phase."""

    def __init__(self, operation: str, phase: str):
        self.operation = operation
        self.phase = phase
        super().__init__(f"Cannot {operation} while session is {phase}.")


class ActionTransitionError(Exception):
    """
    Raised when an action status change would break the lifecycle order.

    Terminal statuses (completed/failed) never transition again, and
    executing is only reachable from detected.
    """

    def __init__(self, action_id: str, current: str, target: str):
        self.action_id = action_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal transition for action {action_id}: {current} -> {target}"
        )


class WebhookDispatchError(Exception):
    """Raised by the webhook dispatcher on network-level failures."""
