"""Core domain models.

The orchestrator, the bonus machine and the storage layer all operate on
these types. Pydantic is used for validation and serialisation at every
data boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]


class Tier(str, Enum):
    """Which of the two secrets a win refers to. Grand outranks consolation."""

    GRAND = "grand"
    CONSOLATION = "consolation"


class BonusState(str, Enum):
    """Per-user progress through the turn-count bonus."""

    NONE = "none"
    OFFERED = "offered"
    CONTINUED = "continued"
    CLAIMED_CONSOLATION = "claimed_consolation"
    CLAIMED_GRAND = "claimed_grand"

    @property
    def is_terminal(self) -> bool:
        return self in (BonusState.CLAIMED_CONSOLATION, BonusState.CLAIMED_GRAND)

    @classmethod
    def claimed(cls, tier: Tier) -> BonusState:
        if tier is Tier.GRAND:
            return cls.CLAIMED_GRAND
        return cls.CLAIMED_CONSOLATION


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ENDED_SUCCESS = "ended_success"
    ENDED_LIMIT = "ended_limit"


class Message(BaseModel):
    """A single entry in a conversation's append-only message list."""

    role: Role
    content: str


class User(BaseModel):
    id: str
    nickname: str


class Conversation(BaseModel):
    """A run of turns between one user and the guardian."""

    id: str
    user_id: str
    nickname: str
    messages: list[Message] = Field(default_factory=list)
    turn_count: int = 0  # user messages only
    max_turns: int = 20
    is_active: bool = True
    is_success: bool = False
    found_secret: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> ConversationStatus:
        if self.is_active:
            return ConversationStatus.ACTIVE
        if self.is_success:
            return ConversationStatus.ENDED_SUCCESS
        return ConversationStatus.ENDED_LIMIT


class SecretSpec(BaseModel):
    """One configured secret phrase.

    `keywords` are short fragments that together identify the phrase even
    when it is paraphrased; all of them must appear for a keyword match.
    """

    phrase: str
    keywords: list[str] = Field(default_factory=list)
    tier: Tier
    label: str
    reward: str = ""


class WinnerRecord(BaseModel):
    nickname: str
    conversation_id: str
    tier: Tier
    secret: str
    reward: str
    is_first: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def category(self) -> str:
        """e.g. "grand-first", "consolation-subsequent"."""
        return f"{self.tier.value}-{'first' if self.is_first else 'subsequent'}"


class RejectionReason(str, Enum):
    CONVERSATION_INACTIVE = "conversation_inactive"
    TURN_LIMIT_REACHED = "turn_limit_reached"
    MESSAGE_TOO_LONG = "message_too_long"
    BONUS_CLAIMED = "bonus_claimed"
    NO_BONUS_CHOICE = "no_bonus_choice"
    INVALID_CHOICE = "invalid_choice"


class Rejection(BaseModel):
    """A policy violation reported to the caller before any upstream call."""

    reason: RejectionReason
    message: str
