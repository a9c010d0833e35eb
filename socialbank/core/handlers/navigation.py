# socialbank/core/handlers/navigation.py
from __future__ import annotations

from socialbank.core.engine.domain import BotResponse, CanonicalMessage, HandlerOutcome, Session
from socialbank.core.engine.state_handlers import HandlerDeps, StateHandler
from socialbank.core.engine.states import State


def help_text(main_menu_token: str, exit_token: str) -> str:
    return (
        "Welcome to Social Banking Help! 🤝\n\n"
        "Getting Started:\n\n"
        "1. Registration Process:\n"
        "   • Have your account number ready\n"
        "   • Choose 'Register' from the menu\n"
        "   • Enter your account number when prompted\n"
        "   • Create a secure 4-digit PIN\n"
        "   • Verify your identity with OTP\n\n"
        "2. After Registration:\n"
        "   • Access money transfers\n"
        "   • Pay bills easily\n"
        "   • Check your balance\n"
        "   • View account statements\n\n"
        "3. Navigation Tips:\n"
        "   • Use menu numbers to select options\n"
        f"   • Type {main_menu_token} to return to main menu\n"
        f"   • Type {exit_token} to exit\n\n"
        "Need more help? Contact our support at support@socialbanking.com\n\n"
        f"Reply with {main_menu_token} to return to the main menu."
    )


async def _show_help(session: Session, deps: HandlerDeps) -> HandlerOutcome:
    return HandlerOutcome(response=BotResponse(text=help_text(deps.main_menu_token, deps.exit_token)))


async def _leave_help(message: CanonicalMessage, session: Session, deps: HandlerDeps) -> HandlerOutcome:
    # Any reply goes back to the menu the owner is entitled to
    registered = await deps.users.get(session.owner) is not None
    return HandlerOutcome(
        response=deps.menus.render(State.WELCOME, guest=not registered),
        next_state=State.WELCOME,
    )


HANDLERS = (
    StateHandler(state=State.HELP, on_enter=_show_help, on_input=_leave_help),
)
