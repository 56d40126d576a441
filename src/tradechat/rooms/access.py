"""Tier access policy for public rooms and privileged actions.

Ordering: free < pro < premium. Private rooms are not in this table;
they are gated by membership rows (see rooms.service).
"""

from __future__ import annotations

TIERS: tuple[str, ...] = ("free", "pro", "premium")

TIER_RANK: dict[str, int] = {tier: rank for rank, tier in enumerate(TIERS)}

ROOM_ACCESS: dict[str, frozenset[str]] = {
    "free": frozenset({"general"}),
    "pro": frozenset({"general", "forex", "crypto"}),
    "premium": frozenset({"general", "forex", "crypto", "stocks"}),
}

PUBLIC_ROOMS: tuple[str, ...] = ("general", "forex", "crypto", "stocks")

OFFICIAL_POST_TIERS = frozenset({"pro", "premium"})
PRIVATE_ROOM_TIERS = frozenset({"premium"})


def is_valid_tier(tier: str) -> bool:
    return tier in TIER_RANK


def is_public_room(room: str) -> bool:
    return room in PUBLIC_ROOMS


def can_access_room(tier: str, room: str) -> bool:
    """Whether ``tier`` may join or post in public ``room``."""
    return room in ROOM_ACCESS.get(tier, frozenset())


def can_post_official(tier: str) -> bool:
    return tier in OFFICIAL_POST_TIERS


def can_create_private_room(tier: str) -> bool:
    return tier in PRIVATE_ROOM_TIERS


def required_tier_for_room(room: str) -> str:
    """Lowest tier whose access set contains ``room``.

    Unknown rooms fall back to the top tier.
    """
    for tier in TIERS:
        if room in ROOM_ACCESS[tier]:
            return tier
    return TIERS[-1]


def upgrade_message(room: str) -> str:
    tier = required_tier_for_room(room)
    return f"Upgrade to {tier.capitalize()} to access {room} room"
