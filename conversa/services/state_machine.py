from enum import Enum
from typing import Optional, Union


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"  # waiting for a human operator
    CLOSED = "closed"


class DialogueState(str, Enum):
    GENERAL = "general_conversation"
    AWAITING_LOCATION = "awaiting_location"
    AWAITING_CRAS_RESULT = "awaiting_cras_result"
    AWAITING_APPOINTMENT_CONFIRMATION = "awaiting_appointment_confirmation"
    CONFIRMING_TRANSFER = "confirming_transfer"
    AWAITING_SURVEY = "awaiting_survey"
    TRANSFERRED = "transferred"


STATUS_TRANSITIONS = {
    ConversationStatus.OPEN: [ConversationStatus.PENDING, ConversationStatus.CLOSED],
    ConversationStatus.PENDING: [ConversationStatus.OPEN, ConversationStatus.CLOSED],
    ConversationStatus.CLOSED: [ConversationStatus.OPEN],
}

# None is the state of a brand-new (or reopened) conversation.
VALID_TRANSITIONS = {
    None: [DialogueState.GENERAL, DialogueState.AWAITING_SURVEY, DialogueState.TRANSFERRED],
    DialogueState.GENERAL: [
        DialogueState.GENERAL,
        DialogueState.AWAITING_LOCATION,
        DialogueState.AWAITING_CRAS_RESULT,
        DialogueState.CONFIRMING_TRANSFER,
        DialogueState.AWAITING_SURVEY,
        DialogueState.TRANSFERRED,
    ],
    DialogueState.AWAITING_LOCATION: [
        DialogueState.AWAITING_LOCATION,
        DialogueState.AWAITING_CRAS_RESULT,
        DialogueState.GENERAL,
        DialogueState.AWAITING_SURVEY,
        DialogueState.TRANSFERRED,
    ],
    DialogueState.AWAITING_CRAS_RESULT: [
        DialogueState.AWAITING_APPOINTMENT_CONFIRMATION,
        DialogueState.AWAITING_LOCATION,
        DialogueState.AWAITING_CRAS_RESULT,
        DialogueState.CONFIRMING_TRANSFER,
        DialogueState.GENERAL,
        DialogueState.AWAITING_SURVEY,
        DialogueState.TRANSFERRED,
    ],
    DialogueState.AWAITING_APPOINTMENT_CONFIRMATION: [
        DialogueState.GENERAL,
        DialogueState.AWAITING_SURVEY,
        DialogueState.TRANSFERRED,
    ],
    DialogueState.CONFIRMING_TRANSFER: [DialogueState.GENERAL, DialogueState.AWAITING_SURVEY, DialogueState.TRANSFERRED],
    DialogueState.AWAITING_SURVEY: [DialogueState.AWAITING_SURVEY, DialogueState.GENERAL, DialogueState.TRANSFERRED],
    DialogueState.TRANSFERRED: [],
}

StateLike = Union[DialogueState, ConversationStatus, None]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: StateLike, to_state: StateLike):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {_label(from_state)} -> {_label(to_state)}")


def _label(state: StateLike) -> str:
    return state.value if state is not None else "new"


def parse_state(raw: Optional[str]) -> Optional[DialogueState]:
    """Map the stored chatbot_state column to the enum. Unknown values fall back to baseline."""
    if raw is None:
        return None
    try:
        return DialogueState(raw)
    except ValueError:
        return DialogueState.GENERAL


def can_transition(from_state: Optional[DialogueState], to_state: DialogueState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: Optional[DialogueState], to_state: DialogueState) -> DialogueState:
    """Perform dialogue state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def can_change_status(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    return to_status in STATUS_TRANSITIONS.get(from_status, [])


def change_status(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    if not can_change_status(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def escalate(current: ConversationStatus) -> ConversationStatus:
    """Hand the conversation to a human operator."""
    return change_status(current, ConversationStatus.PENDING)


def close(current: ConversationStatus) -> ConversationStatus:
    return change_status(current, ConversationStatus.CLOSED)


def reopen(current: ConversationStatus) -> ConversationStatus:
    return change_status(current, ConversationStatus.OPEN)


def return_to_bot(current: ConversationStatus) -> ConversationStatus:
    """Operator hands a pending conversation back to the automated engine."""
    return change_status(current, ConversationStatus.OPEN)
