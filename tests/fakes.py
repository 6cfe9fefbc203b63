import asyncio
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set

import discord


def http_error(status: int, code: int = 0, message: str = "error", cls=discord.HTTPException):
    response = SimpleNamespace(status=status, reason=message)
    return cls(response, {"code": code, "message": message})


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float):
        self.calls.append(delay)


class FakeRankClient:
    """Ranking API stand-in keyed by username; values are raw payloads or exceptions."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = responses or {}
        self.calls: List[tuple] = []

    async def fetch_rank(self, username, tag, region, platform="pc"):
        self.calls.append((username, tag, region, platform))
        value = self.responses.get(username)
        if isinstance(value, Exception):
            raise value
        return value


@dataclass(eq=False)
class FakeRole:
    id: int
    name: str
    hoist: bool = True
    mentionable: bool = False
    colour: Any = None
    edits: List[dict] = field(default_factory=list)
    deleted: bool = False
    guild: Optional["FakeGuild"] = field(default=None, repr=False)

    async def edit(self, reason: Optional[str] = None, **kwargs):
        self.edits.append(kwargs)
        for key, value in kwargs.items():
            setattr(self, key, value)

    async def delete(self, reason: Optional[str] = None):
        self.deleted = True
        if self.guild is not None and self in self.guild.roles:
            self.guild.roles.remove(self)


@dataclass(eq=False)
class FakeMember:
    id: int
    roles: List[FakeRole]
    guild: "FakeGuild" = field(repr=False)
    display_name: str = ""
    added_roles: List[int] = field(default_factory=list)
    removed_roles: List[int] = field(default_factory=list)
    sent: List[Any] = field(default_factory=list)
    add_error: Optional[Exception] = None
    dm_error: Optional[Exception] = None

    async def add_roles(self, *roles: FakeRole, reason: Optional[str] = None):
        if self.add_error is not None:
            raise self.add_error
        for role in roles:
            if role not in self.roles:
                self.roles.append(role)
            self.added_roles.append(role.id)

    async def remove_roles(self, *roles: FakeRole, reason: Optional[str] = None):
        for role in roles:
            if role in self.roles:
                self.roles.remove(role)
            self.removed_roles.append(role.id)

    async def send(self, content=None, embed=None, **kwargs):
        if self.dm_error is not None:
            raise self.dm_error
        self.sent.append(embed if embed is not None else content)

    @property
    def mutation_count(self) -> int:
        return len(self.added_roles) + len(self.removed_roles)


@dataclass(eq=False)
class FakeGuild:
    id: int
    roles: List[FakeRole] = field(default_factory=list)
    members: Dict[int, FakeMember] = field(default_factory=dict)
    name: str = "TestGuild"
    create_error: Optional[Exception] = None
    # Names that another reconciliation creates concurrently: creation fails,
    # but the role shows up on the next fetch.
    racing_names: Set[str] = field(default_factory=set)
    created_roles: List[FakeRole] = field(default_factory=list)
    _pending: List[FakeRole] = field(default_factory=list)
    _next_id: int = 1000

    def add_role(self, name: str, **kwargs) -> FakeRole:
        self._next_id += 1
        role = FakeRole(self._next_id, name, guild=self, **kwargs)
        self.roles.append(role)
        return role

    def add_member(self, member_id: int, roles=None, display_name: str = "") -> FakeMember:
        member = FakeMember(
            id=member_id,
            roles=list(roles or []),
            guild=self,
            display_name=display_name or f"user{member_id}",
        )
        self.members[member_id] = member
        return member

    def get_member(self, member_id: int) -> Optional[FakeMember]:
        return self.members.get(member_id)

    async def fetch_member(self, member_id: int) -> FakeMember:
        member = self.members.get(member_id)
        if member is None:
            raise http_error(404, 10007, "Unknown Member", cls=discord.NotFound)
        return member

    async def create_role(self, name, colour=None, hoist=False, mentionable=False, reason=None):
        if self.create_error is not None:
            raise self.create_error
        if name in self.racing_names:
            self._next_id += 1
            self._pending.append(FakeRole(self._next_id, name, guild=self, colour=colour))
            raise http_error(400, 0, "Already exists")
        self._next_id += 1
        role = FakeRole(
            self._next_id,
            name,
            hoist=hoist,
            mentionable=mentionable,
            colour=colour,
            guild=self,
        )
        self.roles.append(role)
        self.created_roles.append(role)
        return role

    async def fetch_roles(self) -> List[FakeRole]:
        self.roles.extend(self._pending)
        self._pending = []
        return list(self.roles)


@dataclass
class FakeChannel:
    id: int
    sent_embeds: List[object] = field(default_factory=list)
    error: Optional[Exception] = None

    async def send(self, content=None, embed=None, **kwargs):
        if self.error is not None:
            raise self.error
        if embed is not None:
            self.sent_embeds.append(embed)


@dataclass(eq=False)
class FakeUser:
    id: int
    sent: List[Any] = field(default_factory=list)
    dm_error: Optional[Exception] = None

    async def send(self, content=None, embed=None, **kwargs):
        if self.dm_error is not None:
            raise self.dm_error
        self.sent.append(embed if embed is not None else content)


class FakeBot:
    def __init__(
        self,
        channels: Optional[Dict[int, FakeChannel]] = None,
        users: Optional[Dict[int, FakeUser]] = None,
    ):
        self.channels = channels or {}
        # Users not in the cache are only reachable through fetch_user.
        self.users = users or {}
        self.cached_user_ids: Set[int] = set()

    def get_channel(self, channel_id: int):
        return self.channels.get(channel_id)

    def get_user(self, user_id: int):
        if user_id in self.cached_user_ids:
            return self.users.get(user_id)
        return None

    async def fetch_user(self, user_id: int):
        user = self.users.get(user_id)
        if user is None:
            raise http_error(404, 10013, "Unknown User", cls=discord.NotFound)
        return user


class BlockingRankClient(FakeRankClient):
    """Holds every fetch open until ``release`` is set."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        super().__init__(responses)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_rank(self, username, tag, region, platform="pc"):
        self.started.set()
        await self.release.wait()
        return await super().fetch_rank(username, tag, region, platform)
