"""
Tier Resolver.

Maps an account to its membership tier. The ledger only consumes the
resolved `{key, name, priority, credits}`. Tags come from `tag_lookup`; the
service wires it to the account tag store fed by the membership integration.

Resolution follows priority:
1. Highest-priority tier whose tags intersect the account's tags
2. The default tier
"""

import copy
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from credit_ledger.app.core.config import settings

UNLIMITED_CREDITS = -1

# Seed configuration; callers may pass their own catalog
DEFAULT_TIERS: Dict[str, Dict] = {
    "unlimited": {
        "name": "Unlimited",
        "tags": ["mem: guestify pos unlimited"],
        "priority": 100,
        "credits": UNLIMITED_CREDITS,
    },
    "zenith": {
        "name": "Zenith",
        "tags": ["mem: guestify zenith", "mem: guestify zenith trial"],
        "priority": 80,
        "credits": 4000,
    },
    "velocity": {
        "name": "Velocity",
        "tags": ["mem: guestify velocity", "mem: guestify velocity trial"],
        "priority": 60,
        "credits": 1200,
    },
    "accelerator": {
        "name": "Accelerator",
        "tags": ["mem: guestify accel", "mem: guestify accel trial", "mem: guestify pos free"],
        "priority": 40,
        "credits": 300,
    },
    "free": {
        "name": "Free",
        "tags": [],
        "priority": 0,
        "credits": 0,
    },
}


@dataclass(frozen=True)
class Tier:
    key: str
    name: str
    priority: int
    credits: int
    tags: Tuple[str, ...] = ()

    @property
    def is_unlimited(self) -> bool:
        return self.credits < 0


class TierResolver(Protocol):
    async def resolve_tier(self, account_id: int) -> Tier: ...

    async def lookup_tags(self, account_id: int) -> Optional[List[str]]: ...

    def resolve_tags(self, tags: Iterable[str]) -> Tier: ...

    def get_tier(self, tier_key: str) -> Optional[Tier]: ...

    def priority_order(self) -> List[str]: ...

    def next_tier_above(self, tier_key: str) -> Optional[str]: ...


# Returns None for accounts whose tags have never been recorded
TagLookup = Callable[[int], Awaitable[Optional[Iterable[str]]]]


async def _no_tags(account_id: int) -> Optional[Iterable[str]]:
    return None


class TagTierResolver:
    """Resolves tiers by matching account tags against the tier catalog."""

    def __init__(
        self,
        tiers: Optional[Dict[str, Dict]] = None,
        tag_lookup: TagLookup = _no_tags,
        default_tier: str = None,
    ):
        catalog = copy.deepcopy(tiers if tiers is not None else DEFAULT_TIERS)
        self._tiers: Dict[str, Tier] = {
            key: Tier(
                key=key,
                name=config.get("name", key),
                priority=int(config.get("priority", 0)),
                credits=int(config.get("credits", 0)),
                tags=tuple(config.get("tags") or ()),
            )
            for key, config in catalog.items()
        }
        self.tag_lookup = tag_lookup
        self.default_tier = default_tier or settings.default_tier

    def get_tier(self, tier_key: str) -> Optional[Tier]:
        return self._tiers.get(tier_key)

    def all_tiers(self) -> List[Tier]:
        return list(self._tiers.values())

    def priority_order(self) -> List[str]:
        """Tier keys, highest priority first. Lower index = higher tier."""
        ordered = sorted(self._tiers.values(), key=lambda tier: tier.priority, reverse=True)
        return [tier.key for tier in ordered]

    def next_tier_above(self, tier_key: str) -> Optional[str]:
        """The next paid, finite tier to suggest as an upgrade, if any."""
        current = self._tiers.get(tier_key)
        floor = current.priority if current else -1
        candidates = [
            tier for tier in self._tiers.values()
            if tier.priority > floor and tier.credits > 0
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda tier: tier.priority).key

    def default(self) -> Tier:
        tier = self._tiers.get(self.default_tier)
        if tier is None:
            return Tier(key=self.default_tier, name=self.default_tier.title(), priority=0, credits=0)
        return tier

    async def lookup_tags(self, account_id: int) -> Optional[List[str]]:
        tags = await self.tag_lookup(account_id)
        return None if tags is None else list(tags)

    async def resolve_tier(self, account_id: int) -> Tier:
        return self.resolve_tags(await self.lookup_tags(account_id) or ())

    def resolve_tags(self, tags: Iterable[str]) -> Tier:
        """Highest-priority tier whose tags intersect `tags`, else the default."""
        account_tags = set(tags)
        if not account_tags:
            return self.default()

        matched: Optional[Tier] = None
        for tier in self._tiers.values():
            if not tier.tags or not account_tags.intersection(tier.tags):
                continue
            if matched is None or tier.priority > matched.priority:
                matched = tier

        return matched or self.default()


def tag_lookup_from_mapping(mapping: Dict[int, Iterable[str]]) -> TagLookup:
    """Tag source backed by a plain dict, for fixtures and local runs."""
    async def _lookup(account_id: int) -> Optional[Iterable[str]]:
        if account_id not in mapping:
            return None
        return list(mapping[account_id])

    return _lookup
