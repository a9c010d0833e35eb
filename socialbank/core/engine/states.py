# socialbank/core/engine/states.py
"""
Dialogue state vocabulary.

States are plain strings so they can be stored as-is in the session
record. Public states can be entered without an active login; every
other state sits behind the authentication gate.
"""
from __future__ import annotations


class State:
    WELCOME = "WELCOME"
    HELP = "HELP"
    END = "END"

    # Authentication entry points
    AUTHENTICATION = "AUTHENTICATION"      # PIN challenge
    OTP_VERIFICATION = "OTP_VERIFICATION"  # OTP challenge

    # Registration
    REGISTRATION_INIT = "REGISTRATION_INIT"
    ACCOUNT_REGISTRATION = "ACCOUNT_REGISTRATION"

    # Transfers
    TRANSFER_INIT = "TRANSFER_INIT"
    INTERNAL_TRANSFER = "INTERNAL_TRANSFER"
    BANK_TRANSFER = "BANK_TRANSFER"
    MOBILE_MONEY_TRANSFER = "MOBILE_MONEY_TRANSFER"

    # Bill payments
    BILL_PAYMENT_INIT = "BILL_PAYMENT_INIT"

    # Account services
    SERVICES_INIT = "SERVICES_INIT"
    BALANCE_INQUIRY = "BALANCE_INQUIRY"
    MINI_STATEMENT = "MINI_STATEMENT"
    FULL_STATEMENT = "FULL_STATEMENT"
    PIN_MANAGEMENT = "PIN_MANAGEMENT"


ALL_STATES: frozenset[str] = frozenset(
    value for name, value in vars(State).items()
    if not name.startswith("_") and isinstance(value, str)
)

PUBLIC_STATES: frozenset[str] = frozenset({
    State.WELCOME,
    State.HELP,
    State.END,
    State.AUTHENTICATION,
    State.OTP_VERIFICATION,
    State.REGISTRATION_INIT,
    State.ACCOUNT_REGISTRATION,
})

AUTH_ENTRY_STATES: frozenset[str] = frozenset({
    State.AUTHENTICATION,
    State.OTP_VERIFICATION,
})


def is_known(state: str) -> bool:
    return state in ALL_STATES


def is_public(state: str) -> bool:
    return state in PUBLIC_STATES or state.startswith("REGISTRATION_")


def is_protected(state: str) -> bool:
    return not is_public(state)


def auth_entry_state(auth_method: str) -> str:
    """Login entry point for a channel's authentication method."""
    if auth_method == "otp":
        return State.OTP_VERIFICATION
    if auth_method == "pin":
        return State.AUTHENTICATION
    raise ValueError(f"Unknown auth method: {auth_method}")
