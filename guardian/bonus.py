"""Turn-count bonus: per-user state machine.

After every finished turn that did not leak a secret, `evaluate_bonus()`
decides what the user's lifetime turn count earns them:

    state      condition                                   decision
    claimed_*  any                                         NOTHING (terminal)
    continued  total >= grand threshold                    GRANT_GRAND
    none       total >= consolation threshold, grand left  OFFER
    none       total >= consolation threshold, grand gone  GRANT_CONSOLATION
    offered    -                                           NOTHING (waits for a choice)

A user holding an offer moves on only through `apply_choice()`:
"claim" takes the consolation secret, "continue" keeps playing for grand.

A threshold of 0 or less disables its rule.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel

from guardian.models import BonusState, Tier

BonusChoice = Literal["claim", "continue"]


class BonusAction(str, Enum):
    NOTHING = "nothing"
    OFFER = "offer"
    GRANT_GRAND = "grant_grand"
    GRANT_CONSOLATION = "grant_consolation"


class BonusDecision(BaseModel):
    action: BonusAction
    next_state: BonusState

    @property
    def grant_tier(self) -> Tier | None:
        if self.action is BonusAction.GRANT_GRAND:
            return Tier.GRAND
        if self.action is BonusAction.GRANT_CONSOLATION:
            return Tier.CONSOLATION
        return None


class InvalidBonusChoice(ValueError):
    """The user is not holding an offer, or the choice is not claim/continue."""


def evaluate_bonus(
    state: BonusState,
    total_turns: int,
    consolation_threshold: int,
    grand_threshold: int,
    grand_winner_count: int,
    grand_cap: int,
) -> BonusDecision:
    """Return the single transition that fires, or NOTHING with the state unchanged."""
    if state.is_terminal:
        return BonusDecision(action=BonusAction.NOTHING, next_state=state)

    if state is BonusState.CONTINUED and 0 < grand_threshold <= total_turns:
        return BonusDecision(action=BonusAction.GRANT_GRAND, next_state=BonusState.CLAIMED_GRAND)

    if state is BonusState.NONE and 0 < consolation_threshold <= total_turns:
        if grand_winner_count < grand_cap:
            return BonusDecision(action=BonusAction.OFFER, next_state=BonusState.OFFERED)
        return BonusDecision(
            action=BonusAction.GRANT_CONSOLATION,
            next_state=BonusState.CLAIMED_CONSOLATION,
        )

    return BonusDecision(action=BonusAction.NOTHING, next_state=state)


def apply_choice(state: BonusState, choice: str) -> BonusState:
    if state is not BonusState.OFFERED:
        raise InvalidBonusChoice(f"No bonus choice is pending (state is {state.value})")
    if choice == "claim":
        return BonusState.CLAIMED_CONSOLATION
    if choice == "continue":
        return BonusState.CONTINUED
    raise InvalidBonusChoice(f"Unknown bonus choice {choice!r}")
