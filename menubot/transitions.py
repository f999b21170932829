"""
The menu transition table.

next_transition() is a total, side-effect free function of (state, input).
Inputs are matched exactly after trimming; anything a menu does not know
sends the sender back to the main menu with the greeting.
"""

from typing import Dict, NamedTuple, Optional

from menubot.conversation import ConversationState

# Template names as registered with the provider
GREETING_TEMPLATE = "greeting_es"
TOURS_TEMPLATE = "tours_es"
TRANSFERS_TEMPLATE = "transport_es"
NOT_FOUND_TEMPLATE = "404_es"
AGENT_TEMPLATE = "agent_es"
GOODBYE_TEMPLATE = "goodbye_es"

AGENT_KEYWORD = "agente"


class Transition(NamedTuple):
    next_state: ConversationState
    # None means no automated reply
    template_id: Optional[str]


_RESET = Transition(ConversationState.MAIN_MENU, GREETING_TEMPLATE)

_MENUS: Dict[ConversationState, Dict[str, Transition]] = {
    ConversationState.MAIN_MENU: {
        "1": Transition(ConversationState.TOURS, TOURS_TEMPLATE),
        "2": Transition(ConversationState.TRANSFERS, TRANSFERS_TEMPLATE),
        **{
            option: Transition(ConversationState.MAIN_MENU, NOT_FOUND_TEMPLATE)
            for option in ("3", "4", "5", "6")
        },
        AGENT_KEYWORD: Transition(ConversationState.MAIN_MENU, AGENT_TEMPLATE),
    },
    ConversationState.TOURS: {
        "1": Transition(ConversationState.TOURS, NOT_FOUND_TEMPLATE),
        "2": Transition(ConversationState.TOURS, NOT_FOUND_TEMPLATE),
    },
    ConversationState.TRANSFERS: {
        "1": Transition(ConversationState.TRANSFERS, NOT_FOUND_TEMPLATE),
        "2": Transition(ConversationState.TRANSFERS, NOT_FOUND_TEMPLATE),
    },
}


def next_transition(state: ConversationState, text: str) -> Transition:
    """Compute the next state and reply template for an inbound message."""
    state = ConversationState(state)

    # A human agent owns the conversation; the bot stays quiet and the
    # caller leaves the stored row alone, so the 4h window runs from the
    # agent's last reply
    if state == ConversationState.AGENT:
        return Transition(ConversationState.AGENT, None)

    option = (text or "").strip()
    return _MENUS[state].get(option, _RESET)
