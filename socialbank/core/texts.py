# socialbank/core/texts.py
"""
Shared user-facing copy.

Flow-specific prompts live next to their handlers; this module holds
the messages the dispatcher itself emits.
"""
from __future__ import annotations

GOODBYE = (
    "Thank you for using our service. If you need further assistance, "
    "simply reply with 'Hi'.\n\nGoodbye 👋!"
)

SESSION_EXPIRED = (
    "Your session has expired due to inactivity. "
    "Please start a new conversation to continue."
)

REGISTER_FIRST = "Please register first to access banking services.\n\n"

LOGIN_SUCCESS = "Login successful! ✅\n\n"


def generic_retry(main_menu_token: str) -> str:
    return (
        "Sorry, something went wrong. Please try again.\n\n"
        f"Reply with {main_menu_token} to return to main menu."
    )


def back_to_menu(main_menu_token: str) -> str:
    return f"Reply with {main_menu_token} to return to main menu."


def greeting(contact_name: str | None) -> str:
    if not contact_name:
        return ""
    return f"Hello {contact_name}! 👋\n\n"
