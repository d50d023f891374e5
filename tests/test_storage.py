"""Tests for guardian.storage: JSON storage and atomic winner recording."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from guardian.models import BonusState, ConversationStatus, Tier
from guardian.storage import PrizeExhausted, Storage


# ── Conversations ───────────────────────────────────────────


def test_create_conversation_with_greeting(storage: Storage):
    conv = storage.create_conversation("u1", "Ann", max_turns=20, greeting="Hello!")
    assert conv.turn_count == 0
    assert conv.is_active
    assert [m.content for m in conv.messages] == ["Hello!"]
    assert conv.messages[0].role == "assistant"

    loaded = storage.get_conversation(conv.id)
    assert loaded == conv


def test_get_missing_conversation(storage: Storage):
    assert storage.get_conversation("nope") is None


def test_append_user_message_counts_turn(storage: Storage):
    conv = storage.create_conversation("u1", "Ann", max_turns=20, greeting="")
    storage.append_message(conv.id, "user", "hi")
    storage.append_message(conv.id, "assistant", "hello")
    loaded = storage.get_conversation(conv.id)
    assert loaded.turn_count == 1
    assert [(m.role, m.content) for m in loaded.messages] == [("user", "hi"), ("assistant", "hello")]


def test_last_turn_leaves_conversation_active(storage: Storage):
    """Reaching max_turns on append does not end the conversation by itself."""
    conv = storage.create_conversation("u1", "Ann", max_turns=2, greeting="")
    storage.append_message(conv.id, "user", "one")
    storage.append_message(conv.id, "user", "two")
    loaded = storage.get_conversation(conv.id)
    assert loaded.turn_count == 2
    assert loaded.is_active


def test_end_conversation_at_limit(storage: Storage):
    conv = storage.create_conversation("u1", "Ann", max_turns=2, greeting="")
    storage.end_conversation(conv.id, False)
    loaded = storage.get_conversation(conv.id)
    assert not loaded.is_active
    assert loaded.status is ConversationStatus.ENDED_LIMIT


def test_append_to_missing_conversation(storage: Storage):
    with pytest.raises(KeyError):
        storage.append_message("nope", "user", "hi")


def test_end_conversation_success(storage: Storage):
    conv = storage.create_conversation("u1", "Ann", max_turns=20, greeting="")
    storage.end_conversation(conv.id, True, "the secret")
    loaded = storage.get_conversation(conv.id)
    assert loaded.status is ConversationStatus.ENDED_SUCCESS
    assert loaded.found_secret == "the secret"


def test_total_turn_count_spans_conversations(storage: Storage):
    a = storage.create_conversation("u1", "Ann", max_turns=20, greeting="")
    b = storage.create_conversation("u1", "Ann", max_turns=20, greeting="")
    other = storage.create_conversation("u2", "Bob", max_turns=20, greeting="")
    for _ in range(3):
        storage.append_message(a.id, "user", "x")
    for _ in range(2):
        storage.append_message(b.id, "user", "x")
    storage.append_message(other.id, "user", "x")

    assert storage.get_user_total_turn_count("u1") == 5
    assert storage.get_user_total_turn_count("u2") == 1
    assert storage.get_user_total_turn_count("nobody") == 0


def test_list_conversations_by_user(storage: Storage):
    storage.create_conversation("u1", "Ann", max_turns=20, greeting="")
    storage.create_conversation("u2", "Bob", max_turns=20, greeting="")
    assert len(storage.list_conversations("u1")) == 1
    assert len(storage.list_conversations()) == 2


# ── Bonus status ────────────────────────────────────────────


def test_bonus_status_defaults_to_none(storage: Storage):
    assert storage.get_bonus_status("u1") is BonusState.NONE


def test_set_bonus_status(storage: Storage):
    storage.set_bonus_status("u1", BonusState.OFFERED)
    storage.set_bonus_status("u2", BonusState.CONTINUED)
    storage.set_bonus_status("u1", BonusState.CLAIMED_CONSOLATION)
    assert storage.get_bonus_status("u1") is BonusState.CLAIMED_CONSOLATION
    assert storage.get_bonus_status("u2") is BonusState.CONTINUED


# ── Winners ─────────────────────────────────────────────────


def test_first_winner_per_tier(storage: Storage):
    g1 = storage.record_winner("Ann", "c1", Tier.GRAND, "G", "¥888")
    c1 = storage.record_winner("Bob", "c2", Tier.CONSOLATION, "C", "¥66")
    g2 = storage.record_winner("Cid", "c3", Tier.GRAND, "G", "¥888")
    c2 = storage.record_winner("Dee", "c4", Tier.CONSOLATION, "C", "¥66")

    assert (g1.is_first, g2.is_first) == (True, False)
    assert (c1.is_first, c2.is_first) == (True, False)
    assert g1.category == "grand-first"
    assert c2.category == "consolation-subsequent"


def test_winner_counts_and_listing(storage: Storage):
    storage.record_winner("Ann", "c1", Tier.GRAND, "G", "¥888")
    storage.record_winner("Bob", "c2", Tier.CONSOLATION, "C", "¥66")
    assert storage.get_grand_winner_count() == 1
    assert storage.get_winner_count(Tier.CONSOLATION) == 1
    assert [w.nickname for w in storage.list_winners()] == ["Bob", "Ann"]


def test_capped_record_refused(storage: Storage):
    storage.record_winner("Ann", "c1", Tier.GRAND, "G", "¥888", cap=1)
    with pytest.raises(PrizeExhausted):
        storage.record_winner("Bob", "c2", Tier.GRAND, "G", "¥888", cap=1)
    assert storage.get_grand_winner_count() == 1


def test_concurrent_first_winner_is_unique(storage: Storage):
    def grant(i: int):
        return storage.record_winner(f"user{i}", f"c{i}", Tier.CONSOLATION, "C", "¥66")

    with ThreadPoolExecutor(max_workers=16) as pool:
        records = list(pool.map(grant, range(40)))

    assert sum(r.is_first for r in records) == 1
    assert storage.get_winner_count(Tier.CONSOLATION) == 40


def test_concurrent_grants_never_exceed_cap(storage: Storage):
    cap = 3

    def grant(i: int) -> bool:
        try:
            storage.record_winner(f"user{i}", f"c{i}", Tier.GRAND, "G", "¥888", cap=cap)
        except PrizeExhausted:
            return False
        return True

    with ThreadPoolExecutor(max_workers=16) as pool:
        granted = list(pool.map(grant, range(30)))

    assert sum(granted) == cap
    assert storage.get_grand_winner_count() == cap
    assert sum(w.is_first for w in storage.list_winners()) == 1


def test_storage_reloads_from_disk(storage: Storage):
    conv = storage.create_conversation("u1", "Ann", max_turns=20, greeting="hi")
    storage.record_winner("Ann", conv.id, Tier.GRAND, "G", "¥888")
    again = Storage(Path("data-tests"))
    assert again.get_conversation(conv.id).messages[0].content == "hi"
    assert again.get_grand_winner_count() == 1
