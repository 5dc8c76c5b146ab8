"""
Parley - Preference Learning
=============================
Feeds the preference store from live conversation and exposes the
per-user preference read view.

Two extraction strategies
-------------------------
1. **Explicit** — regex families over the user's own words ("I prefer…",
   "I like…", "I don't like…", "I want…", "I always…").  Each capture runs
   to the next sentence terminator and is cleaned by ``clean_preference``.
2. **Pattern analysis** — every ``PATTERN_ANALYSIS_INTERVAL`` user
   messages, the last ``PATTERN_ANALYSIS_WINDOW`` messages are scored for
   length, question ratio, formality and pacing.

Deduplication gate
------------------
A candidate is skipped when any stored preference for the same user is
equal ignoring case or has word-set Jaccard similarity above 0.9.  This
is a best-effort gate, not a uniqueness constraint: two concurrent saves
of the same statement can both pass it.

Usage:
    learner = PreferenceLearner(preference_store, message_source)
    learner.schedule(user_id, user_message)      # fire-and-forget
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from parley.config.prompt_templates import CASUAL_WORDS, PATTERN_STATEMENTS
from parley.config.settings import settings
from parley.src.core.models import PREFERENCE_SOURCES, ConversationMessage, PreferenceSource, PreferenceStats, PreferenceSummary, UserPreferenceEntry
from parley.src.database.preference_store import PreferenceStore
from parley.src.utils.logger import get_logger
from parley.src.utils.text_utils import clean_preference, jaccard_similarity

logger = get_logger(__name__)

DUPLICATE_THRESHOLD = 0.9


class ExtractedPreference(BaseModel):
    """A candidate preference, not yet deduplicated or stored."""

    model_config = ConfigDict(frozen=True)

    preference: str
    source: PreferenceSource
    confidence: float = Field(ge=0.0, le=1.0)


# ══════════════════════════════════════════════════════════════════════
#  EXPLICIT EXTRACTION
# ══════════════════════════════════════════════════════════════════════

# Capture up to the next sentence terminator or end of text
_CAPTURE = r"\s+(.+?)(?:[.!?]|$)"


def _family(*openers: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(rf"\b{opener}{_CAPTURE}", re.IGNORECASE) for opener in openers)


# (patterns, statement prefix, confidence), applied in this order
_EXPLICIT_FAMILIES: tuple[tuple[tuple[re.Pattern[str], ...], str, float], ...] = (
    (_family(r"i\s+prefer", r"i'd\s+prefer", r"i\s+would\s+prefer"), "prefers", 1.0),
    (_family(r"i\s+like", r"i\s+love", r"i\s+enjoy"), "likes", 1.0),
    (_family(r"i\s+don't\s+like", r"i\s+do\s+not\s+like", r"i\s+hate", r"i\s+dislike"), "doesn't like", 1.0),
    (_family(r"i\s+want", r"i\s+need"), "wants", 0.9),
    (_family(r"i\s+always", r"i\s+usually", r"i\s+typically"), "typically", 0.85),
)


def extract_explicit_preferences(message: str) -> list[ExtractedPreference]:
    """
    Pull stated preferences out of one user message.

    Returns candidates in family order (prefer, like, dislike, want,
    habitual), then pattern order, then position in the message.
    """
    found: list[ExtractedPreference] = []
    for patterns, prefix, confidence in _EXPLICIT_FAMILIES:
        for pattern in patterns:
            for match in pattern.finditer(message):
                phrase = clean_preference(match.group(1))
                if phrase:
                    found.append(ExtractedPreference(preference=f"{prefix} {phrase}", source="explicit", confidence=confidence))
    return found


# ══════════════════════════════════════════════════════════════════════
#  PATTERN ANALYSIS
# ══════════════════════════════════════════════════════════════════════

_MIN_MESSAGES = 10
_MIN_USER_MESSAGES = 5

_QUESTION_OPENER_RE = re.compile(r"^(what|how|why|when|where|who|can|could|would|should)", re.IGNORECASE)


def _inferred(kind: str) -> ExtractedPreference:
    statement, confidence = PATTERN_STATEMENTS[kind]
    return ExtractedPreference(preference=statement, source="pattern_analysis", confidence=confidence)


def _is_question(text: str) -> bool:
    return "?" in text or bool(_QUESTION_OPENER_RE.match(text))


def _is_casual(text: str) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in CASUAL_WORDS)


def analyze_conversation_patterns(user_id: str, messages: list[ConversationMessage]) -> list[ExtractedPreference]:
    """
    Infer style preferences from a chronological message window.

    Needs at least 10 messages overall and 5 written by *user_id*;
    otherwise returns nothing.
    """
    if len(messages) < _MIN_MESSAGES:
        return []

    own = [m for m in messages if m.sender_id == user_id]
    if len(own) < _MIN_USER_MESSAGES:
        return []

    found: list[ExtractedPreference] = []
    total = len(own)

    # ── Length ─────────────────────────────────────────────────────────
    avg_length = sum(len(m.content) for m in own) / total
    if avg_length < 50:
        found.append(_inferred("brief"))
    elif avg_length > 150:
        found.append(_inferred("detailed"))

    # ── Questions ──────────────────────────────────────────────────────
    if sum(1 for m in own if _is_question(m.content)) / total > 0.7:
        found.append(_inferred("inquisitive"))

    # ── Formality ──────────────────────────────────────────────────────
    casual_ratio = sum(1 for m in own if _is_casual(m.content)) / total
    if casual_ratio > 0.4:
        found.append(_inferred("casual"))
    elif casual_ratio < 0.1 and avg_length > 80:
        found.append(_inferred("formal"))

    # ── Pacing ─────────────────────────────────────────────────────────
    gaps = [(later.created_at - earlier.created_at).total_seconds() for earlier, later in zip(own, own[1:])]
    if gaps and sum(gaps) / len(gaps) < 30:
        found.append(_inferred("quick"))

    return found


# ══════════════════════════════════════════════════════════════════════
#  LEARNER
# ══════════════════════════════════════════════════════════════════════


class MessageSource(Protocol):
    """Read access to conversation history owned by the host application."""

    async def count_user_messages(self, user_id: str) -> int: ...

    async def recent_messages(self, user_id: str, limit: int) -> list[ConversationMessage]:
        """Last *limit* messages of the user's sessions, oldest first."""
        ...


def is_duplicate(candidate: str, existing: list[UserPreferenceEntry]) -> bool:
    lowered = candidate.lower()
    return any(e.preference.lower() == lowered or jaccard_similarity(e.preference, candidate) > DUPLICATE_THRESHOLD for e in existing)


class PreferenceLearner:
    """
    Turns chat turns into stored preferences, off the reply path.

    Parameters
    ----------
    store
        An initialised ``PreferenceStore`` (injected).
    message_source
        Conversation history for pattern analysis.  Without one, only
        explicit extraction runs.
    interval
        Pattern analysis runs when the user's message count is a
        multiple of this.
    window
        Number of recent messages analysed.
    """

    __slots__ = ("_store", "_messages", "_interval", "_window", "_tasks")

    def __init__(self, store: PreferenceStore, message_source: MessageSource | None = None, interval: int | None = None, window: int | None = None) -> None:
        self._store = store
        self._messages = message_source
        self._interval = interval or settings.PATTERN_ANALYSIS_INTERVAL
        self._window = window or settings.PATTERN_ANALYSIS_WINDOW
        self._tasks: set[asyncio.Task] = set()


    async def save_preference(self, user_id: str, candidate: ExtractedPreference) -> UserPreferenceEntry | None:
        """Store *candidate* unless the user already has an equivalent one."""
        existing = await self._store.list_all(user_id)
        if is_duplicate(candidate.preference, existing):
            logger.debug("[PREFS] Skipping duplicate: %.50s", candidate.preference)
            return None
        return await self._store.insert(user_id, candidate.preference, candidate.source, candidate.confidence)


    async def extract_and_update(self, user_id: str, user_message: str) -> list[UserPreferenceEntry]:
        """
        Save explicit preferences from *user_message*, then run pattern
        analysis when the message count hits the interval.

        Never raises; failures are logged.  Returns the entries stored
        before any failure.
        """
        saved: list[UserPreferenceEntry] = []
        t_start = time.perf_counter()
        try:
            explicit = extract_explicit_preferences(user_message)
            if explicit:
                logger.info("[PREFS] Found %d explicit preference(s) for user %s.", len(explicit), user_id)
            await self._save_all(user_id, explicit, saved)

            if self._messages is not None:
                count = await self._messages.count_user_messages(user_id)
                if count % self._interval == 0:
                    recent = await self._messages.recent_messages(user_id, self._window)
                    patterns = analyze_conversation_patterns(user_id, recent)
                    logger.info("[PREFS] Pattern analysis for user %s over %d message(s) → %d candidate(s).", user_id, len(recent), len(patterns))
                    await self._save_all(user_id, patterns, saved)
        except Exception:
            logger.exception("[PREFS] Preference extraction failed for user %s.", user_id)

        logger.debug("[PREFS] Update for user %s finished in %.1fms (%d saved).", user_id, (time.perf_counter() - t_start) * 1000, len(saved))
        return saved


    async def _save_all(self, user_id: str, candidates: list[ExtractedPreference], saved: list[UserPreferenceEntry]) -> None:
        # Sequential so each dedup check sees the previous insert
        for candidate in candidates:
            entry = await self.save_preference(user_id, candidate)
            if entry is not None:
                saved.append(entry)


    def schedule(self, user_id: str, user_message: str) -> asyncio.Task:
        """
        Run ``extract_and_update`` as a detached task on the running loop.

        The task is referenced until it finishes; cancellation or an
        unexpected failure is logged from its done-callback.
        """
        task = asyncio.get_running_loop().create_task(self.extract_and_update(user_id, user_message))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task


    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("[PREFS] Preference update task was cancelled.")
        elif task.exception() is not None:
            logger.error("[PREFS] Preference update task failed.", exc_info=task.exception())


    @property
    def pending(self) -> int:
        return len(self._tasks)


# ══════════════════════════════════════════════════════════════════════
#  READ VIEW
# ══════════════════════════════════════════════════════════════════════


class PreferenceService:
    """Per-user preference listing, grouping and statistics."""

    __slots__ = ("_store",)

    def __init__(self, store: PreferenceStore) -> None:
        self._store = store


    async def summarize(self, user_id: str) -> PreferenceSummary:
        entries = await self._store.list_all(user_id)
        by_source = {source: [e for e in entries if e.source == source] for source in PREFERENCE_SOURCES}

        stats = PreferenceStats(
            total=len(entries),
            explicit=len(by_source["explicit"]),
            inferred=len(by_source["pattern_analysis"]),
            average_confidence=sum(e.confidence for e in entries) / len(entries) if entries else 0.0,
        )
        return PreferenceSummary(all=entries, by_source=by_source, stats=stats)


    async def remove(self, preference_id: str) -> None:
        await self._store.delete(preference_id)
