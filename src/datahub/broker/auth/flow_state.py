from enum import Enum


class FlowState(str, Enum):
    """Steps of a single sign-in or account-linking flow.

    A flow moves forward through the non-failure states in declaration order and
    ends in SESSION_ISSUED (primary sign-in) or LINK_CONFIRMED (account linking).
    The failure states are terminal and reachable from any step; the caller must
    restart from URL_REQUESTED.
    """

    URL_REQUESTED = "url_requested"
    STATE_ISSUED = "state_issued"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VERIFIED = "state_verified"
    CODE_EXCHANGED = "code_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    PERSISTED = "persisted"
    SESSION_ISSUED = "session_issued"
    LINK_CONFIRMED = "link_confirmed"

    STATE_INVALID = "state_invalid"
    EXCHANGE_FAILED = "exchange_failed"
    PROFILE_FAILED = "profile_failed"
    PERSIST_FAILED = "persist_failed"
    SESSION_FAILED = "session_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        FlowState.SESSION_ISSUED,
        FlowState.LINK_CONFIRMED,
        FlowState.STATE_INVALID,
        FlowState.EXCHANGE_FAILED,
        FlowState.PROFILE_FAILED,
        FlowState.PERSIST_FAILED,
        FlowState.SESSION_FAILED,
    }
)
