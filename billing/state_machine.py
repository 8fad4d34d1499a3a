from __future__ import annotations

from typing import Final

from billing.errors import InvalidTransitionError

INITIAL_STATE: Final[str] = "draft"

ESTIMATE_TRANSITIONS: Final[dict[str, set[str]]] = {
    "draft": {"sent"},
    # expired is driven by expires_at elapsing, see DocumentService.expire_estimates
    "sent": {"approved", "rejected", "expired"},
    "approved": set(),
    "rejected": set(),
    "expired": set(),
}

INVOICE_TRANSITIONS: Final[dict[str, set[str]]] = {
    "draft": {"sent"},
    "sent": {"paid", "overdue", "cancelled"},
    "overdue": {"paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}

ALLOWED_TRANSITIONS: Final[dict[str, dict[str, set[str]]]] = {
    "estimate": ESTIMATE_TRANSITIONS,
    "invoice": INVOICE_TRANSITIONS,
}

TERMINAL_STATES: Final[dict[str, set[str]]] = {
    kind: {state for state, targets in table.items() if not targets}
    for kind, table in ALLOWED_TRANSITIONS.items()
}

# approved estimates may be converted to an invoice exactly once
CONVERTIBLE_STATE: Final[str] = "approved"


def _table(kind: str) -> dict[str, set[str]]:
    try:
        return ALLOWED_TRANSITIONS[kind.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown document kind: {kind}") from exc


def can_transition(kind: str, from_state: str, to_state: str) -> bool:
    table = _table(kind)
    from_norm = from_state.strip().lower()
    to_norm = to_state.strip().lower()
    return to_norm in table.get(from_norm, set())


def transition_state(kind: str, from_state: str, to_state: str) -> str:
    table = _table(kind)
    from_norm = from_state.strip().lower()
    to_norm = to_state.strip().lower()

    if from_norm not in table:
        raise InvalidTransitionError(from_state, to_state, reason=f"unknown {kind} state {from_state}")
    if to_norm not in table:
        raise InvalidTransitionError(from_state, to_state, reason=f"unknown {kind} state {to_state}")
    if to_norm not in table[from_norm]:
        raise InvalidTransitionError(from_norm, to_norm)
    return to_norm


def allowed_targets(kind: str, state: str) -> set[str]:
    return set(_table(kind).get(state.strip().lower(), set()))


def is_terminal(kind: str, state: str) -> bool:
    return state.strip().lower() in TERMINAL_STATES[kind.strip().lower()]
