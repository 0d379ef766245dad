"""Reaction encoding and toggle rules.

Stored form: the message's `reactions` attribute holds a JSON object
mapping emoji -> [user_id, ...]. In memory messages carry both the raw form
(`reactions_raw`) and display counts (`reactions`).

A user holds at most one reaction per message. Placeholder or non-string
reactor IDs are dropped whenever the stored form is decoded.
"""

import json
from typing import Any

from rendezvous.logging import get_logger

logger = get_logger(__name__)

# Written by older clients when the reactor was not known
PLACEHOLDER_REACTOR = "unknown"


def _valid_reactor(user_id: Any) -> bool:
    return isinstance(user_id, str) and bool(user_id.strip()) and user_id != PLACEHOLDER_REACTOR


def clean_reactions(raw: Any) -> dict[str, list[str]]:
    """Drop non-list buckets, invalid reactor IDs and empty buckets."""
    if not isinstance(raw, dict):
        return {}
    cleaned: dict[str, list[str]] = {}
    for emoji, users in raw.items():
        if not isinstance(emoji, str) or not isinstance(users, list):
            continue
        valid: list[str] = []
        for user_id in users:
            if _valid_reactor(user_id) and user_id not in valid:
                valid.append(user_id)
        if valid:
            cleaned[emoji] = valid
    return cleaned


def decode_reactions(encoded: str | dict | None) -> dict[str, list[str]]:
    """Decode the stored reactions attribute into the raw form.

    Malformed payloads decode to an empty mapping.
    """
    if not encoded:
        return {}
    if isinstance(encoded, str):
        try:
            encoded = json.loads(encoded)
        except json.JSONDecodeError:
            logger.warning("reactions_decode_failed")
            return {}
    return clean_reactions(encoded)


def encode_reactions(raw: dict[str, list[str]]) -> str | None:
    """Encode the raw form for storage; None when no bucket is left."""
    cleaned = clean_reactions(raw)
    if not cleaned:
        return None
    return json.dumps(cleaned)


def reaction_counts(raw: dict[str, list[str]]) -> dict[str, int]:
    return {emoji: len(users) for emoji, users in raw.items() if users}


def user_reaction(raw: dict[str, list[str]], user_id: str) -> str | None:
    """The emoji user_id currently reacts with, if any."""
    for emoji, users in raw.items():
        if user_id in users:
            return emoji
    return None


def toggle_reaction(raw: dict[str, list[str]], user_id: str, emoji: str) -> dict[str, list[str]]:
    """Apply one user's reaction toggle and return the new raw form.

    Toggling the emoji the user already holds removes it; any other emoji
    moves the reaction. Every bucket is swept for user_id, so a corrupt
    mapping holding the same user twice is repaired in one toggle.

    The input mapping is not modified.
    """
    already_holds = user_id in raw.get(emoji, [])
    result: dict[str, list[str]] = {}
    for bucket, users in clean_reactions(raw).items():
        remaining = [u for u in users if u != user_id]
        if remaining:
            result[bucket] = remaining
    if not already_holds:
        result.setdefault(emoji, []).append(user_id)
    return result


def needs_cleaning(encoded: str | dict | None) -> bool:
    """True if the stored form holds anything decode_reactions would drop."""
    if not encoded:
        return False
    if isinstance(encoded, str):
        try:
            parsed = json.loads(encoded)
        except json.JSONDecodeError:
            return True
    else:
        parsed = encoded
    return parsed != clean_reactions(parsed)
