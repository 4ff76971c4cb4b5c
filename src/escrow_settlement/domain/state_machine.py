"""Escrow Settlement State Machine Guard.

Uses python-statemachine to enforce the monotonic settlement lifecycle of an
escrow mirror row. Whatever order ledger events arrive in, a settled escrow
can never go back to OPEN, and once release metadata is written it can never
be rewritten by a second (possibly conflicting) settlement event.

The current state is derived from the row, not stored:
    settled=false                         -> OPEN
    settled=true, no settlement_kind      -> SETTLED  (snapshot saw it, event not yet)
    settlement_kind="released"            -> RELEASED
    settlement_kind="cancelled"           -> CANCELLED

Transition table:
    OPEN     -> SETTLED    (confirm_settled)
    OPEN     -> RELEASED   (record_release)
    SETTLED  -> RELEASED   (record_release)
    OPEN     -> CANCELLED  (record_cancel)
    SETTLED  -> CANCELLED  (record_cancel)
"""

from __future__ import annotations

from statemachine import State, StateMachine

from escrow_settlement.domain.enums import SettlementKind


class EscrowSettlementMachine(StateMachine):
    """State machine that guards the settle lifecycle of one escrow.

    Usage:
        sm = EscrowSettlementMachine(current_status="OPEN")
        sm.record_release()  # transitions to RELEASED
        sm.status            # "RELEASED"
    """

    # --- States ---
    OPEN = State("OPEN", initial=True)
    SETTLED = State("SETTLED")
    RELEASED = State("RELEASED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Events / Transitions ---
    confirm_settled = OPEN.to(SETTLED)
    record_release = OPEN.to(RELEASED) | SETTLED.to(RELEASED)
    record_cancel = OPEN.to(CANCELLED) | SETTLED.to(CANCELLED)

    def __init__(self, current_status: str = "OPEN") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown settlement state '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


def settlement_state_of(settled: bool, settlement_kind: str | None) -> str:
    """Derive the machine state from the mirror row's columns."""
    if settlement_kind == SettlementKind.RELEASED:
        return "RELEASED"
    if settlement_kind == SettlementKind.CANCELLED:
        return "CANCELLED"
    return "SETTLED" if settled else "OPEN"


def can_transition(current_status: str, event_name: str) -> bool:
    """Return True if event_name may fire from current_status."""
    sm = EscrowSettlementMachine(current_status=current_status)
    return event_name in sm.get_allowed_events()


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a settlement transition and return the new state.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the state or event name is invalid.
    """
    sm = EscrowSettlementMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
