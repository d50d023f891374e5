"""Conversation orchestrator: runs one user turn end-to-end.

Turn flow:
  1. Policy checks (active, turn limit, message length). A violation is
     returned as a Rejection; nothing is sent upstream.
  2. Append the user message (one turn) and open the upstream stream.
  3. For every delta: accumulate, emit `content`, check the whole reply for
     a leaked secret.
       leak       → persist the partial reply, record the winner, end the
                    conversation successfully, close the stream, emit
                    `password_found`.
  4. Stream exhausted without a leak → persist the reply, then let the
     bonus machine decide: nothing, a `bonus_offer`, or an automatic grant
     (`content` disclosing the secret + `password_found`).
  5. A turn that used up the last allowed turn without a win ends the
     conversation (`ended_limit`).
  6. Always finish with `done`.

An upstream failure, before or during streaming, emits `error` then `done`.
The user message stays stored and the conversation stays active.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Literal

from pydantic import BaseModel

from guardian.bonus import BonusAction, InvalidBonusChoice, apply_choice, evaluate_bonus
from guardian.config import GameConfig, RulesConfig
from guardian.events import (
    BonusOfferEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    SecretFoundEvent,
    StreamEvent,
)
from guardian.llm import HttpStreamLLM, LLMError, StreamingLLM
from guardian.matcher import MatchResult, SecretMatcher
from guardian.models import (
    BonusState,
    Conversation,
    Rejection,
    RejectionReason,
    SecretSpec,
    Tier,
    User,
    WinnerRecord,
)
from guardian.storage import Gateway, PrizeExhausted

logger = logging.getLogger(__name__)

UPSTREAM_UNAVAILABLE = "The guardian is unavailable right now, please try again."
STREAM_INTERRUPTED = "The guardian's reply was interrupted, please try again."

GRANT_TEXT = (
    "\n\nAlright, we have been talking for so long ({turns} turns in total) that I can't "
    "hold out any more. Here it is, the passphrase is: {secret}"
)
CLAIM_TEXT = "Congratulations on claiming the bonus passphrase! It is: {secret}"
CONTINUE_TEXT = (
    "You gave up the bonus passphrase to keep going for the grand one. Good luck! "
    "Once you reach {threshold} turns in total, the grand passphrase is yours."
)


class BonusChoiceResult(BaseModel):
    choice: Literal["claim", "continue"]
    message: str
    secret: str | None = None
    reward: str | None = None
    is_first_winner: bool = False


class Orchestrator:
    """Drives turns for any number of conversations.

    Args:
        storage:   Persistence gateway; every state change goes through it.
        llm:       Streaming LLM (HttpStreamLLM in production).
        matcher:   Secret matcher built from the two configured secrets.
        rules:     Turn limits and bonus thresholds.
        grand_cap: Number of grand prizes available.
    """

    def __init__(
        self,
        *,
        storage: Gateway,
        llm: StreamingLLM,
        matcher: SecretMatcher,
        rules: RulesConfig,
        grand_cap: int,
    ) -> None:
        self._storage = storage
        self._llm = llm
        self._matcher = matcher
        self._rules = rules
        self._grand_cap = grand_cap

    @classmethod
    def from_config(
        cls, config: GameConfig, storage: Gateway, llm: StreamingLLM | None = None
    ) -> Orchestrator:
        if llm is None:
            ai = config.ai
            llm = HttpStreamLLM(
                api_url=ai.api_url,
                api_key=ai.api_key,
                model=ai.model,
                system_prompt=ai.system_prompt,
                temperature=ai.temperature,
                max_tokens=ai.max_tokens,
                timeout=ai.timeout,
                max_attempts=ai.max_attempts,
                retry_delay=ai.retry_delay,
                queue_size=ai.queue_size,
            )
        matcher = SecretMatcher(config.secret_spec(Tier.GRAND), config.secret_spec(Tier.CONSOLATION))
        return cls(
            storage=storage,
            llm=llm,
            matcher=matcher,
            rules=config.rules,
            grand_cap=config.prizes.grand_count,
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_conversation(self, user: User) -> Conversation | Rejection:
        if self._storage.get_bonus_status(user.id).is_terminal:
            return Rejection(
                reason=RejectionReason.BONUS_CLAIMED,
                message="You have already won a passphrase and cannot start a new conversation.",
            )
        return self._storage.create_conversation(
            user.id, user.nickname, self._rules.max_turns, self._rules.greeting
        )

    def check_turn(self, conversation: Conversation, text: str) -> Rejection | None:
        """Policy checks run before anything is stored or sent upstream."""
        if not conversation.is_active:
            return Rejection(
                reason=RejectionReason.CONVERSATION_INACTIVE,
                message="This conversation has ended.",
            )
        if conversation.turn_count >= conversation.max_turns:
            self._storage.end_conversation(conversation.id, False)
            return Rejection(
                reason=RejectionReason.TURN_LIMIT_REACHED,
                message=f"The limit of {conversation.max_turns} turns has been reached.",
            )
        if len(text) > self._rules.max_message_length:
            return Rejection(
                reason=RejectionReason.MESSAGE_TOO_LONG,
                message=f"Messages are limited to {self._rules.max_message_length} characters.",
            )
        return None

    def send_message(
        self, user: User, conversation: Conversation, text: str
    ) -> Rejection | AsyncIterator[StreamEvent]:
        """Return a Rejection, or the event stream for this turn."""
        rejection = self.check_turn(conversation, text)
        if rejection is not None:
            logger.info(
                "turn rejected conversation=%s reason=%s", conversation.id, rejection.reason.value
            )
            return rejection
        return self._run_turn(user, conversation, text)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self, user: User, conversation: Conversation, text: str
    ) -> AsyncIterator[StreamEvent]:
        history = list(conversation.messages)
        self._storage.append_message(conversation.id, "user", text)

        try:
            deltas = await self._llm.stream(history, text)
        except LLMError as e:
            logger.warning("llm unavailable conversation=%s: %s", conversation.id, e)
            yield ErrorEvent(message=UPSTREAM_UNAVAILABLE)
            yield DoneEvent()
            return

        reply = ""
        match: MatchResult | None = None
        try:
            async with aclosing(deltas):
                async for delta in deltas:
                    reply += delta
                    yield ContentEvent(content=delta)
                    result = self._matcher.check(reply)
                    if result.found:
                        match = result
                        break
        except LLMError as e:
            logger.warning(
                "llm stream failed conversation=%s after %d chars: %s",
                conversation.id, len(reply), e,
            )
            yield ErrorEvent(message=STREAM_INTERRUPTED)
            yield DoneEvent()
            return

        if match is not None:
            yield self._finish_leak(user, conversation, reply, match)
            yield DoneEvent()
            return

        if reply:
            self._storage.append_message(conversation.id, "assistant", reply)
        for event in self._run_bonus(user, conversation):
            yield event
        self._end_if_exhausted(conversation.id)
        yield DoneEvent()

    def _end_if_exhausted(self, conversation_id: str) -> None:
        current = self._storage.get_conversation(conversation_id)
        if current is not None and current.is_active and current.turn_count >= current.max_turns:
            self._storage.end_conversation(conversation_id, False)
            logger.info("turn limit reached conversation=%s", conversation_id)

    def _finish_leak(
        self, user: User, conversation: Conversation, reply: str, match: MatchResult
    ) -> SecretFoundEvent:
        assert match.tier is not None
        self._storage.append_message(conversation.id, "assistant", reply)
        record = self._storage.record_winner(
            user.nickname, conversation.id, match.tier, match.secret, match.reward
        )
        self._storage.end_conversation(conversation.id, True, match.secret)
        self._mark_claimed(user, match.tier)
        logger.info(
            "secret leaked conversation=%s tier=%s matched_by=%s",
            conversation.id, match.tier.value, match.matched_by,
        )
        return SecretFoundEvent(
            secret=match.secret,
            tier=match.tier,
            label=match.label,
            reward=match.reward,
            is_first_winner=record.is_first,
        )

    def _mark_claimed(self, user: User, tier: Tier) -> None:
        # claimed_* never changes once set
        if not self._storage.get_bonus_status(user.id).is_terminal:
            self._storage.set_bonus_status(user.id, BonusState.claimed(tier))

    # ------------------------------------------------------------------
    # Bonus
    # ------------------------------------------------------------------

    def _run_bonus(self, user: User, conversation: Conversation) -> list[StreamEvent]:
        total_turns = self._storage.get_user_total_turn_count(user.id)
        decision = evaluate_bonus(
            state=self._storage.get_bonus_status(user.id),
            total_turns=total_turns,
            consolation_threshold=self._rules.bonus_consolation_threshold,
            grand_threshold=self._rules.bonus_grand_threshold,
            grand_winner_count=self._storage.get_grand_winner_count(),
            grand_cap=self._grand_cap,
        )

        if decision.action is BonusAction.OFFER:
            self._storage.set_bonus_status(user.id, decision.next_state)
            logger.info("bonus offered user=%s total_turns=%d", user.id, total_turns)
            consolation = self._matcher.consolation
            return [
                BonusOfferEvent(
                    total_turns=total_turns,
                    consolation_secret=consolation.phrase,
                    consolation_reward=consolation.reward,
                    grand_available=True,
                )
            ]

        tier = decision.grant_tier
        if tier is None:
            return []
        return self._grant(user, conversation, tier, total_turns)

    def _record_grant(
        self, user: User, conversation: Conversation, tier: Tier
    ) -> tuple[SecretSpec, WinnerRecord]:
        """Record a bonus winner. Grand is capped; a sold-out grand falls back to consolation."""
        spec = self._matcher.spec_for(tier)
        if tier is Tier.GRAND:
            try:
                record = self._storage.record_winner(
                    user.nickname, conversation.id, tier, spec.phrase, spec.reward,
                    cap=self._grand_cap,
                )
                return spec, record
            except PrizeExhausted:
                logger.info("grand prize sold out, granting consolation to user=%s", user.id)
                spec = self._matcher.consolation
        record = self._storage.record_winner(
            user.nickname, conversation.id, spec.tier, spec.phrase, spec.reward
        )
        return spec, record

    def _grant(
        self, user: User, conversation: Conversation, tier: Tier, total_turns: int
    ) -> list[StreamEvent]:
        spec, record = self._record_grant(user, conversation, tier)
        text = GRANT_TEXT.format(turns=total_turns, secret=spec.phrase)
        self._storage.append_message(conversation.id, "assistant", text)
        self._storage.end_conversation(conversation.id, True, spec.phrase)
        self._storage.set_bonus_status(user.id, BonusState.claimed(spec.tier))
        logger.info(
            "bonus granted user=%s tier=%s total_turns=%d", user.id, spec.tier.value, total_turns
        )
        return [
            ContentEvent(content=text),
            SecretFoundEvent(
                secret=spec.phrase,
                tier=spec.tier,
                label=spec.label,
                reward=spec.reward,
                is_first_winner=record.is_first,
            ),
        ]

    def choose_bonus(
        self, user: User, conversation: Conversation, choice: str
    ) -> BonusChoiceResult | Rejection:
        """Resolve a pending offer: "claim" the consolation secret or "continue" for grand.

        The choice must be made in an active conversation. An offer made on a
        final turn stays pending and can be resolved from a new conversation.
        """
        if not conversation.is_active:
            return Rejection(
                reason=RejectionReason.CONVERSATION_INACTIVE,
                message="This conversation has ended. Start a new one to make your choice.",
            )
        state = self._storage.get_bonus_status(user.id)
        try:
            next_state = apply_choice(state, choice)
        except InvalidBonusChoice as e:
            reason = (
                RejectionReason.INVALID_CHOICE
                if state is BonusState.OFFERED
                else RejectionReason.NO_BONUS_CHOICE
            )
            return Rejection(reason=reason, message=str(e))

        if next_state is BonusState.CONTINUED:
            text = CONTINUE_TEXT.format(threshold=self._rules.bonus_grand_threshold)
            self._storage.set_bonus_status(user.id, next_state)
            self._storage.append_message(conversation.id, "assistant", text)
            logger.info("bonus declined user=%s", user.id)
            return BonusChoiceResult(choice="continue", message=text)

        spec = self._matcher.consolation
        record = self._storage.record_winner(
            user.nickname, conversation.id, spec.tier, spec.phrase, spec.reward
        )
        self._storage.end_conversation(conversation.id, True, spec.phrase)
        self._storage.set_bonus_status(user.id, next_state)
        text = CLAIM_TEXT.format(secret=spec.phrase)
        self._storage.append_message(conversation.id, "assistant", text)
        logger.info("bonus claimed user=%s", user.id)
        return BonusChoiceResult(
            choice="claim",
            message=text,
            secret=spec.phrase,
            reward=spec.reward,
            is_first_winner=record.is_first,
        )
