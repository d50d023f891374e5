"""Stream events emitted by the orchestrator.

A closed tagged union discriminated by `type`. Field names go over the wire
in camelCase, which is what the browser client reads:

    {"type": "content", "content": "..."}
    {"type": "password_found", "password": "...", "tier": "grand", "prizeType": "...",
     "prizeAmount": "...", "isFirstWinner": true}
    {"type": "bonus_offer", "totalTurns": 55, "consolationPassword": "...",
     "consolationPrizeAmount": "...", "grandAvailable": true}
    {"type": "error", "content": "..."}

`done` is not a JSON object on the wire; it renders as the `[DONE]` sentinel.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from guardian.models import Tier


class EventType(str, Enum):
    CONTENT = "content"
    PASSWORD_FOUND = "password_found"
    BONUS_OFFER = "bonus_offer"
    ERROR = "error"
    DONE = "done"


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ContentEvent(_Event):
    type: Literal["content"] = EventType.CONTENT.value
    content: str


class SecretFoundEvent(_Event):
    type: Literal["password_found"] = EventType.PASSWORD_FOUND.value
    secret: str = Field(alias="password")
    tier: Tier
    label: str = Field(alias="prizeType")
    reward: str = Field(alias="prizeAmount")
    is_first_winner: bool


class BonusOfferEvent(_Event):
    type: Literal["bonus_offer"] = EventType.BONUS_OFFER.value
    total_turns: int
    consolation_secret: str = Field(alias="consolationPassword")
    consolation_reward: str = Field(alias="consolationPrizeAmount")
    grand_available: bool


class ErrorEvent(_Event):
    type: Literal["error"] = EventType.ERROR.value
    message: str = Field(alias="content")


class DoneEvent(_Event):
    type: Literal["done"] = EventType.DONE.value


StreamEvent = Annotated[
    Union[ContentEvent, SecretFoundEvent, BonusOfferEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

DONE_FRAME = "data: [DONE]\n\n"


def to_payload(event: StreamEvent) -> dict:
    """Wire representation of a non-done event."""
    return event.model_dump(mode="json", by_alias=True)


def to_sse(event: StreamEvent) -> str:
    """Render one event as a server-sent-events frame."""
    if isinstance(event, DoneEvent):
        return DONE_FRAME
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


def from_payload(data: dict) -> StreamEvent:
    return _adapter.validate_python(data)
