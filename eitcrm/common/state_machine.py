"""Status transitions for deliveries, inbound updates, pending links and invites.

Every status write in the services goes through `validate_transition` first so
an illegal jump (e.g. re-confirming a rejected link) fails loudly instead of
silently corrupting a row.
"""

DELIVERY_TRANSITIONS: dict[str, set[str]] = {
    # FAILED -> FAILED is a retry that failed again.
    "PENDING": {"SENT", "FAILED", "UNDELIVERABLE"},
    "FAILED": {"SENT", "FAILED", "UNDELIVERABLE"},
    "SENT": set(),
    "UNDELIVERABLE": set(),
}

UPDATE_TRANSITIONS: dict[str, set[str]] = {
    "RECEIVED": {"PROCESSED", "IGNORED", "ERROR"},
    "PROCESSED": set(),
    "IGNORED": set(),
    "ERROR": set(),
}

PENDING_LINK_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"CONFIRMED", "REJECTED"},
    "CONFIRMED": set(),
    "REJECTED": set(),
}

INVITE_TRANSITIONS: dict[str, set[str]] = {
    "ACTIVE": {"USED"},
    "USED": set(),
}

MACHINES: dict[str, dict[str, set[str]]] = {
    "delivery": DELIVERY_TRANSITIONS,
    "update": UPDATE_TRANSITIONS,
    "pending_link": PENDING_LINK_TRANSITIONS,
    "invite": INVITE_TRANSITIONS,
}

RETRYABLE_DELIVERY_STATUSES = ("PENDING", "FAILED")


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed by its state machine."""


def validate_transition(machine: str, current: str, new: str) -> None:
    """Raise when a transition is not allowed by the named state machine."""

    transitions = MACHINES[machine]
    if new not in transitions.get(current, set()):
        raise InvalidTransition(f"Invalid {machine} transition: {current} -> {new}")


def is_terminal(machine: str, status: str) -> bool:
    return not MACHINES[machine].get(status)


def sources_for(machine: str, new: str) -> list[str]:
    """Statuses from which `new` is reachable; used as SQL guards on updates."""

    return sorted(status for status, targets in MACHINES[machine].items() if new in targets)
