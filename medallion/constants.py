"""
medallion.constants — Shared Lookup Tables & Helpers
=====================================================

Single source of truth for the event → action mapping used by count,
threshold and composite triggers, the metric table behind threshold
triggers, the keyword sets used by the text heuristics, and the key slug
rule for new achievements.
"""

from __future__ import annotations

import re

from medallion.database.models import AchievementTier, EventType

# ---------------------------------------------------------------------------
# Event type → canonical action name
# ---------------------------------------------------------------------------
EVENT_TO_ACTION: dict[EventType, str] = {
    EventType.POST_CREATED: "posts_created",
    EventType.THREAD_CREATED: "threads_created",
    EventType.USER_LOGIN: "login_count",
    EventType.TIP_SENT: "tips_sent",
    EventType.TIP_RECEIVED: "tips_received",
    EventType.SHOUTBOX_MESSAGE: "shoutbox_messages",
    EventType.LIKE_GIVEN: "likes_given",
    EventType.LIKE_RECEIVED: "likes_received",
    EventType.USER_MENTIONED: "mentions_received",
    EventType.DAILY_STREAK: "daily_streaks",
    EventType.WALLET_LOSS: "wallet_losses",
    EventType.THREAD_NECROMANCY: "thread_necromancies",
    EventType.CRASH_SENTIMENT: "crash_sentiments",
    EventType.DIAMOND_HANDS: "diamond_hands_events",
    EventType.PAPER_HANDS: "paper_hands_events",
    EventType.MARKET_PREDICTION: "market_predictions",
    EventType.THREAD_LOCKED: "threads_locked",
    EventType.CUSTOM_EVENT: "custom_events",
}

ACTION_TO_EVENT: dict[str, EventType] = {
    action: event_type for event_type, action in EVENT_TO_ACTION.items()
}

# Alternate action names accepted in trigger configs, stored in canonical form.
# Replies are posts in the log.
ACTION_ALIASES: dict[str, str] = {
    "reply_created": "posts_created",
    "replies_created": "posts_created",
    "post_created": "posts_created",
    "thread_created": "threads_created",
}


# ---------------------------------------------------------------------------
# Threshold metrics — metric name → (source event type, payload field to sum)
# A ``None`` field means "count the events".
# ---------------------------------------------------------------------------
THRESHOLD_METRICS: dict[str, tuple[EventType, str | None]] = {
    "total_posts": (EventType.POST_CREATED, None),
    "total_threads": (EventType.THREAD_CREATED, None),
    "total_logins": (EventType.USER_LOGIN, None),
    "total_likes_given": (EventType.LIKE_GIVEN, None),
    "total_likes_received": (EventType.LIKE_RECEIVED, None),
    "total_mentions": (EventType.USER_MENTIONED, None),
    "total_tips_sent": (EventType.TIP_SENT, None),
    "tip_volume_sent": (EventType.TIP_SENT, "amount"),
    "tip_volume_received": (EventType.TIP_RECEIVED, "amount"),
    "longest_daily_streak": (EventType.DAILY_STREAK, "streak_days"),
}

# Metrics reported as a maximum over events instead of a running total.
MAX_METRICS: frozenset[str] = frozenset({"longest_daily_streak"})


# ---------------------------------------------------------------------------
# Tier ordering
# ---------------------------------------------------------------------------
TIER_ORDER: dict[str, int] = {tier.value: rank for rank, tier in enumerate(AchievementTier)}


# ---------------------------------------------------------------------------
# Keyword sets for the text heuristics (matched case-insensitively)
# ---------------------------------------------------------------------------
MEME_KEYWORDS: tuple[str, ...] = (
    "pepe", "wojak", "chad", "based", "cringe",
    "moon", "lambo", "diamond hands", "paper hands",
)

MOON_KEYWORDS: tuple[str, ...] = (
    "moon", "lambo", "rocket", "\U0001f680", "to the moon",
    "100x", "1000x", "diamond hands",
)

CRASH_KEYWORDS: tuple[str, ...] = ("crash", "dump", "rekt", "bear")


def contains_keyword(text: str | None, keywords: tuple[str, ...]) -> bool:
    """Return True if *text* contains any of *keywords* (case-insensitive)."""
    if not text:
        return False
    lowered = text.lower()
    return any(word in lowered for word in keywords)


# ---------------------------------------------------------------------------
# Achievement key slugs
# ---------------------------------------------------------------------------
_KEY_MAX_LENGTH = 100
_NON_KEY_CHARS = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def generate_key(name: str) -> str:
    """Derive a stable catalog key from a display name.

    ``"Diamond Hands!"`` → ``"diamond_hands"``.  Lowercases, strips every
    character that is not a letter, digit or whitespace, collapses
    whitespace runs to ``_`` and truncates to 100 characters.
    """
    slug = _NON_KEY_CHARS.sub("", name.lower()).strip()
    return _WHITESPACE.sub("_", slug)[:_KEY_MAX_LENGTH]
