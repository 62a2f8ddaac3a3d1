"""
Per-call state shared by the turn-taking components.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SessionStatus(str, Enum):
    """Connection lifecycle of a call."""
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class IntakeState(str, Enum):
    """Where the intake conversation currently stands."""
    INITIAL = "initial"
    COLLECTING_DETAILS = "collecting_details"
    AWAITING_LOCATION = "awaiting_location"
    CHECKING_AVAILABILITY = "checking_availability"
    AWAITING_SCHEDULE_CONFIRMATION = "awaiting_schedule_confirmation"
    SCHEDULING = "scheduling"
    ENDED = "ended"


@dataclass(frozen=True)
class ResponseFragment:
    """
    A chunk of reply text headed for speech synthesis.

    `index` is None for unsequenced acknowledgment fillers, which
    bypass the ordering buffer.
    """
    index: Optional[int]
    text: str
    interaction_index: int = 0

    @property
    def is_sequenced(self) -> bool:
        return self.index is not None


@dataclass
class Session:
    """State for one active call."""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stream_sid: str = ""
    call_sid: str = ""
    status: SessionStatus = SessionStatus.OPEN
    conversation_state: IntakeState = IntakeState.INITIAL

    # Utterance segmentation
    speech_buffer: str = ""
    last_speech_at: float = field(default_factory=time.monotonic)

    # Acknowledgments
    last_ack_at: Optional[float] = None
    utterance_acks: int = 0

    # Turn-taking
    fragment_counter: int = 0
    processing_response: bool = False
    interaction_count: int = 0

    @property
    def closed(self) -> bool:
        return self.status == SessionStatus.CLOSED

    def next_fragment_index(self) -> int:
        """Allocate the next response-fragment index (0, 1, 2, ...)."""
        index = self.fragment_counter
        self.fragment_counter += 1
        return index

    def reset_utterance(self) -> None:
        """Forget the current utterance after it has been finalized."""
        self.speech_buffer = ""
        self.utterance_acks = 0
