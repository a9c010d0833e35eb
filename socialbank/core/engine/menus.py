# socialbank/core/engine/menus.py
"""
Typed menu registry.

A menu hub is a state whose transitions are fully described by a table
entry: a prompt and a set of options, each option naming the state it
leads to. Adding a navigation screen only needs a new ``MenuScreen``.

Screens may have a guest variant (shown to owners who have not
registered yet); lookups fall back to the member screen.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from socialbank.core.engine.domain import BotResponse, Button
from socialbank.core.engine.errors import MenuConfigurationError
from socialbank.core.engine.states import ALL_STATES, State

INVALID_SELECTION_PREFIX = "Invalid selection. "

MEMBER = "member"
GUEST = "guest"


@dataclass(frozen=True)
class MenuOption:
    token: str
    label: str
    next_state: str

    def matches(self, text: str) -> bool:
        candidate = text.strip().casefold()
        return candidate == self.token.casefold() or candidate == self.label.casefold()


@dataclass(frozen=True)
class MenuScreen:
    state: str
    prompt: str
    options: tuple[MenuOption, ...]
    footer: str = ""
    audience: str = MEMBER

    def option_for(self, text: str) -> Optional[MenuOption]:
        for option in self.options:
            if option.matches(text):
                return option
        return None

    def render_text(self) -> str:
        lines = [self.prompt, ""]
        lines.extend(f"{o.token}. {o.label}" for o in self.options)
        if self.footer:
            lines.extend(["", self.footer])
        return "\n".join(lines)


class MenuRegistry:
    """Static state -> menu screen table, loaded once at startup."""

    def __init__(self, screens: Iterable[MenuScreen] = ()):
        self._screens: dict[tuple[str, str], MenuScreen] = {}
        for screen in screens:
            self.add(screen)

    def add(self, screen: MenuScreen) -> None:
        key = (screen.state, screen.audience)
        if key in self._screens:
            raise MenuConfigurationError(
                f"Menu for state {screen.state} ({screen.audience}) registered twice"
            )
        self._screens[key] = screen

    def has_menu(self, state: str) -> bool:
        return (state, MEMBER) in self._screens or (state, GUEST) in self._screens

    def states(self) -> set[str]:
        return {state for state, _ in self._screens}

    def screen(self, state: str, *, guest: bool = False) -> MenuScreen:
        if guest and (state, GUEST) in self._screens:
            return self._screens[(state, GUEST)]
        try:
            return self._screens[(state, MEMBER)]
        except KeyError:
            raise KeyError(f"No menu registered for state {state}") from None

    def render(self, state: str, *, guest: bool = False, prefix: str = "") -> BotResponse:
        screen = self.screen(state, guest=guest)
        return BotResponse(
            text=f"{prefix}{screen.render_text()}",
            buttons=tuple(Button(id=o.token, title=f"{o.token}. {o.label}") for o in screen.options),
        )

    def resolve(self, state: str, text: str, *, guest: bool = False) -> Optional[str]:
        """
        Map user input to the next state.

        Matches the option token or its label, case-insensitively.
        Returns None for an invalid selection.
        """
        option = self.screen(state, guest=guest).option_for(text)
        return option.next_state if option else None

    def render_invalid(self, state: str, *, guest: bool = False) -> BotResponse:
        return self.render(state, guest=guest, prefix=INVALID_SELECTION_PREFIX)

    def validate(self, known_states: Iterable[str] = ALL_STATES) -> None:
        """Every option must lead to a known state and be unambiguous within its screen."""
        known = set(known_states)
        problems: list[str] = []

        for (state, audience), screen in sorted(self._screens.items()):
            if state not in known:
                problems.append(f"{state}/{audience}: menu state is not a known state")
            if not screen.options:
                problems.append(f"{state}/{audience}: menu has no options")

            seen: set[str] = set()
            for option in screen.options:
                if option.next_state not in known:
                    problems.append(
                        f"{state}/{audience}: option {option.token} leads to unknown state {option.next_state}"
                    )
                for key in (option.token.casefold(), option.label.casefold()):
                    if key in seen:
                        problems.append(f"{state}/{audience}: ambiguous input '{key}'")
                    seen.add(key)

        if problems:
            raise MenuConfigurationError("Invalid menu table: " + "; ".join(problems))


def build_default_menus(*, main_menu_token: str = "00", exit_token: str = "000") -> MenuRegistry:
    main_footer = (
        f"To return to this menu at any time, reply with {main_menu_token}.\n"
        f"To exit at any time, reply with {exit_token}."
    )
    sub_footer = f"Reply with {main_menu_token} for main menu or {exit_token} to exit."

    return MenuRegistry([
        MenuScreen(
            state=State.WELCOME,
            prompt="Please select an option from the menu below:",
            options=(
                MenuOption("1", "Register", State.REGISTRATION_INIT),
                MenuOption("2", "Money Transfer", State.TRANSFER_INIT),
                MenuOption("3", "Bill Payments", State.BILL_PAYMENT_INIT),
                MenuOption("4", "Account Services", State.SERVICES_INIT),
            ),
            footer=main_footer,
        ),
        MenuScreen(
            state=State.WELCOME,
            audience=GUEST,
            prompt=(
                "Welcome to Social Banking! 🏦\n\n"
                "To get started with our banking services, you'll need to register first. "
                "Registration is quick and secure!\n\n"
                "Please select an option:"
            ),
            options=(
                MenuOption("1", "Register", State.REGISTRATION_INIT),
                MenuOption("2", "Help", State.HELP),
            ),
            footer="Reply with the number of your choice.",
        ),
        MenuScreen(
            state=State.REGISTRATION_INIT,
            prompt="Please select registration type:",
            options=(
                MenuOption("1", "Account Registration", State.ACCOUNT_REGISTRATION),
            ),
            footer=sub_footer,
        ),
        MenuScreen(
            state=State.TRANSFER_INIT,
            prompt="Please select transfer type:",
            options=(
                MenuOption("1", "Internal Transfer", State.INTERNAL_TRANSFER),
                MenuOption("2", "Bank Transfer", State.BANK_TRANSFER),
                MenuOption("3", "Mobile Money", State.MOBILE_MONEY_TRANSFER),
            ),
            footer=sub_footer,
        ),
        MenuScreen(
            state=State.SERVICES_INIT,
            prompt="Account Services Menu:",
            options=(
                MenuOption("1", "Balance Inquiry", State.BALANCE_INQUIRY),
                MenuOption("2", "Mini Statement", State.MINI_STATEMENT),
                MenuOption("3", "Full Statement", State.FULL_STATEMENT),
                MenuOption("4", "PIN Management", State.PIN_MANAGEMENT),
            ),
            footer=sub_footer,
        ),
    ])
