from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional


class RankTier(IntEnum):
    UNRANKED = 0
    IRON = 1
    BRONZE = 2
    SILVER = 3
    GOLD = 4
    PLATINUM = 5
    DIAMOND = 6
    ASCENDANT = 7
    IMMORTAL = 8
    RADIANT = 9

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    @property
    def has_divisions(self) -> bool:
        return self not in (RankTier.UNRANKED, RankTier.RADIANT)

    @property
    def color(self) -> int:
        return TIER_COLORS[self]

    @classmethod
    def from_name(cls, value: str) -> Optional["RankTier"]:
        key = value.strip().casefold()
        if key in _TIER_ALIASES:
            return _TIER_ALIASES[key]
        for tier in cls:
            if tier.name.casefold() == key:
                return tier
        return None


TIER_COLORS: dict[RankTier, int] = {
    RankTier.UNRANKED: 0x808080,
    RankTier.IRON: 0x696969,
    RankTier.BRONZE: 0xCD7F32,
    RankTier.SILVER: 0xC0C0C0,
    RankTier.GOLD: 0xFFD700,
    RankTier.PLATINUM: 0x66D1C7,
    RankTier.DIAMOND: 0x6F85FF,
    RankTier.ASCENDANT: 0xA6E05A,
    RankTier.IMMORTAL: 0xC4005E,
    RankTier.RADIANT: 0xFFE26A,
}

_TIER_ALIASES = {
    "norank": RankTier.UNRANKED,
    "unrated": RankTier.UNRANKED,
}

DIVISIONS = (1, 2, 3)


class ParseFailure(ValueError):
    """Raised when a ranking API response cannot be turned into a Rank."""


@dataclass(frozen=True)
class Rank:
    tier: RankTier
    division: Optional[int] = None
    score: Optional[int] = None

    def __post_init__(self):
        if self.tier.has_divisions:
            if self.division not in DIVISIONS:
                raise ValueError(
                    f"{self.tier.display_name} requires a division in 1-3, got {self.division!r}"
                )
        elif self.division is not None:
            object.__setattr__(self, "division", None)

    @property
    def label(self) -> str:
        if self.division is None:
            return self.tier.display_name
        return f"{self.tier.display_name} {self.division}"

    @property
    def role_name(self) -> str:
        return role_name(self.tier, self.division)

    def same_position(self, other: "Rank") -> bool:
        return self.tier == other.tier and self.division == other.division


def role_name(tier: RankTier, division: Optional[int]) -> str:
    """Return the canonical rank role name, e.g. ``Bronze2`` or ``Radiant1``."""
    if not tier.has_divisions:
        return f"{tier.display_name}1"
    if division not in DIVISIONS:
        raise ValueError(
            f"{tier.display_name} requires a division in 1-3, got {division!r}"
        )
    return f"{tier.display_name}{division}"


ALL_ROLE_NAMES: tuple[str, ...] = tuple(
    role_name(tier, division)
    for tier in RankTier
    for division in (DIVISIONS if tier.has_divisions else (None,))
)

_ROLE_NAME_SET = frozenset(ALL_ROLE_NAMES)


def is_rank_role_name(name: str) -> bool:
    return name in _ROLE_NAME_SET


def tier_from_role_name(name: str) -> Optional[RankTier]:
    if not is_rank_role_name(name):
        return None
    return RankTier.from_name(name.rstrip("123"))


# Parsing of ranking API responses

FAILURE_PHRASES = (
    "could not be retrieved",
    "could not retrieve",
    "not found",
    "error",
    "を取得できませんでした",
)

TEXT_RANK_RE = re.compile(r"^([A-Za-z]+)\s+(\d+)")
TEXT_BARE_TIER_RE = re.compile(r"^([A-Za-z]+)\b")
SCORE_RE = re.compile(r"RR:\s*(\d+)")

TIER_KEYS = ("rank", "name", "currentTierPatched", "tier")
DIVISION_KEYS = ("division", "level")
SCORE_KEYS = ("rr", "rp", "ranking_in_tier")


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _build_rank(
    tier: Optional[RankTier], division: Optional[int], score: Optional[int]
) -> Optional[Rank]:
    if tier is None:
        return None
    if not tier.has_divisions:
        division = None
    try:
        return Rank(tier=tier, division=division, score=score)
    except ValueError:
        return None


def _parse_text(text: str) -> Optional[Rank]:
    stripped = text.strip()
    lowered = stripped.casefold()
    if any(phrase in lowered for phrase in FAILURE_PHRASES):
        return None

    score_match = SCORE_RE.search(stripped)
    score = int(score_match.group(1)) if score_match else None

    match = TEXT_RANK_RE.match(stripped)
    if match:
        tier = RankTier.from_name(match.group(1))
        return _build_rank(tier, int(match.group(2)), score)

    bare = TEXT_BARE_TIER_RE.match(stripped)
    if bare:
        tier = RankTier.from_name(bare.group(1))
        # A divisional tier with no division is not a usable rank.
        if tier is not None and not tier.has_divisions:
            return Rank(tier=tier, score=score)
    return None


def _parse_structured(data: dict[str, Any]) -> Optional[Rank]:
    tier_value = _first_present(data, TIER_KEYS)
    division = _to_int(_first_present(data, DIVISION_KEYS))
    score = _to_int(_first_present(data, SCORE_KEYS))

    if tier_value is None:
        return Rank(tier=RankTier.UNRANKED, score=score)

    tier_text = str(tier_value)
    match = TEXT_RANK_RE.match(tier_text.strip())
    if match:
        tier = RankTier.from_name(match.group(1))
        if division is None:
            division = int(match.group(2))
    else:
        tier = RankTier.from_name(tier_text)
    return _build_rank(tier, division, score)


def parse_rank(raw: Any) -> Optional[Rank]:
    """Normalize a raw ranking API response.

    Text responses look like ``"Bronze 1, RR: 28 (-30)"``; JSON responses carry
    the tier under one of several aliased keys. Returns ``None`` when the
    response reports a lookup failure or has an unrecognized shape.
    """
    if isinstance(raw, str):
        return _parse_text(raw)
    if isinstance(raw, dict):
        return _parse_structured(raw)
    return None


def require_rank(raw: Any) -> Rank:
    rank = parse_rank(raw)
    if rank is None:
        preview = str(raw)[:120]
        raise ParseFailure(f"Unrecognized rank response: {preview!r}")
    return rank
