"""Streaming conversation pipeline.

One user turn: policy checks → upstream stream → per-delta leak check →
bonus evaluation → ordered events (content, password_found, bonus_offer,
error, done). See orchestrator.py for the full flow.
"""

from .orchestrator import (  # noqa: F401
    BonusChoiceResult,
    Orchestrator,
)
