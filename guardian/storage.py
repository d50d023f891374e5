"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      conversations/
        {id}.json         ← Conversation, messages included
      bonus.json          ← {user_id: BonusState}
      winners.json        ← append-only list of WinnerRecord

Every read-modify-write runs under one process-wide lock, so concurrent
orchestration runs (threads or tasks) see a linearizable history. In
particular `record_winner()` decides "first winner for this tier" and
enforces the optional cap inside the same critical section.

The orchestrator talks to storage only through the `Gateway` protocol, so a
database-backed implementation can replace this one.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from guardian.models import BonusState, Conversation, Message, Role, Tier, WinnerRecord

logger = logging.getLogger(__name__)


class PrizeExhausted(RuntimeError):
    """A capped winner record was refused because the cap is reached."""

    def __init__(self, tier: Tier, cap: int) -> None:
        super().__init__(f"All {cap} {tier.value} prizes have been awarded")
        self.tier = tier
        self.cap = cap


# ---------------------------------------------------------------------------
# Gateway: what the orchestrator needs from persistence
# ---------------------------------------------------------------------------

class Gateway(Protocol):
    def create_conversation(
        self, user_id: str, nickname: str, max_turns: int, greeting: str
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def append_message(self, conversation_id: str, role: Role, content: str) -> None: ...

    def end_conversation(
        self, conversation_id: str, success: bool, found_secret: str | None = None
    ) -> None: ...

    def record_winner(
        self,
        nickname: str,
        conversation_id: str,
        tier: Tier,
        secret: str,
        reward: str,
        cap: int | None = None,
    ) -> WinnerRecord: ...

    def get_user_total_turn_count(self, user_id: str) -> int: ...

    def get_bonus_status(self, user_id: str) -> BonusState: ...

    def set_bonus_status(self, user_id: str, state: BonusState) -> None: ...

    def get_grand_winner_count(self) -> int: ...


# ---------------------------------------------------------------------------
# Storage: JSON file implementation
# ---------------------------------------------------------------------------

class Storage:
    _lock = threading.RLock()

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._conv_root = base_path / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _conv_file(self, conversation_id: str) -> Path:
        return self._conv_root / f"{conversation_id}.json"

    def _bonus_file(self) -> Path:
        return self._base / "bonus.json"

    def _winners_file(self) -> Path:
        return self._base / "winners.json"

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    def _load_conversation(self, conversation_id: str) -> Conversation:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            raise KeyError(f"Conversation {conversation_id!r} not found")
        return conv

    def _save_conversation(self, conv: Conversation) -> None:
        self._conv_file(conv.id).write_text(conv.model_dump_json(indent=2), encoding="utf-8")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
        self, user_id: str, nickname: str, max_turns: int, greeting: str
    ) -> Conversation:
        now = datetime.now(timezone.utc)
        conv = Conversation(
            id=f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}",
            user_id=user_id,
            nickname=nickname,
            max_turns=max_turns,
            created_at=now,
        )
        if greeting:
            conv.messages.append(Message(role="assistant", content=greeting))
        with self._lock:
            self._save_conversation(conv)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        path = self._conv_file(conversation_id)
        with self._lock:
            if not path.exists():
                return None
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))

    def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        """Newest first; all users when `user_id` is None."""
        with self._lock:
            convs = [
                Conversation.model_validate_json(p.read_text(encoding="utf-8"))
                for p in self._conv_root.glob("*.json")
            ]
        if user_id is not None:
            convs = [c for c in convs if c.user_id == user_id]
        return sorted(convs, key=lambda c: c.created_at, reverse=True)

    def append_message(self, conversation_id: str, role: Role, content: str) -> None:
        """Append a message. A user message counts one turn.

        Reaching `max_turns` does not end the conversation here; the caller
        ends it once the final turn has completed.
        """
        with self._lock:
            conv = self._load_conversation(conversation_id)
            conv.messages.append(Message(role=role, content=content))
            if role == "user":
                conv.turn_count += 1
            self._save_conversation(conv)

    def end_conversation(
        self, conversation_id: str, success: bool, found_secret: str | None = None
    ) -> None:
        with self._lock:
            conv = self._load_conversation(conversation_id)
            conv.is_active = False
            conv.is_success = success
            conv.found_secret = found_secret
            self._save_conversation(conv)

    def get_user_total_turn_count(self, user_id: str) -> int:
        """Sum of turns over every conversation the user has had."""
        return sum(c.turn_count for c in self.list_conversations(user_id))

    # ------------------------------------------------------------------
    # Bonus status
    # ------------------------------------------------------------------

    def get_bonus_status(self, user_id: str) -> BonusState:
        with self._lock:
            statuses = self._read_json(self._bonus_file(), {})
        return BonusState(statuses.get(user_id, BonusState.NONE.value))

    def set_bonus_status(self, user_id: str, state: BonusState) -> None:
        with self._lock:
            statuses = self._read_json(self._bonus_file(), {})
            statuses[user_id] = state.value
            self._write_json(self._bonus_file(), statuses)

    # ------------------------------------------------------------------
    # Winners (append-only)
    # ------------------------------------------------------------------

    def _load_winners(self) -> list[WinnerRecord]:
        return [WinnerRecord.model_validate(w) for w in self._read_json(self._winners_file(), [])]

    def record_winner(
        self,
        nickname: str,
        conversation_id: str,
        tier: Tier,
        secret: str,
        reward: str,
        cap: int | None = None,
    ) -> WinnerRecord:
        """Append a winner, flagging the first one ever recorded for its tier.

        With `cap` set, raises PrizeExhausted instead of recording when the
        tier already has `cap` winners.
        """
        with self._lock:
            winners = self._load_winners()
            tier_count = sum(1 for w in winners if w.tier is tier)
            if cap is not None and tier_count >= cap:
                raise PrizeExhausted(tier, cap)

            record = WinnerRecord(
                nickname=nickname,
                conversation_id=conversation_id,
                tier=tier,
                secret=secret,
                reward=reward,
                is_first=tier_count == 0,
            )
            winners.append(record)
            self._write_json(
                self._winners_file(),
                [w.model_dump(mode="json") for w in winners],
            )
        logger.info(
            "winner recorded nickname=%s conversation=%s category=%s",
            nickname, conversation_id, record.category,
        )
        return record

    def list_winners(self) -> list[WinnerRecord]:
        """Newest first."""
        with self._lock:
            winners = self._load_winners()
        return list(reversed(winners))

    def get_winner_count(self, tier: Tier) -> int:
        with self._lock:
            return sum(1 for w in self._load_winners() if w.tier is tier)

    def get_grand_winner_count(self) -> int:
        return self.get_winner_count(Tier.GRAND)
