"""Snapshot data model, produced by the API clients and consumed by the summarizers.

GitLab merge requests and Teams conversations are modelled as frozen
dataclasses. Message content and mentions are tagged unions of separate
dataclasses (``TextContent | HtmlContent``, ``UserMention | TextMention``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional, Union


class UnsupportedContentError(ValueError):
    """Raised for message content or message types the report cannot render."""


# ISO-8601 with optional fraction of any precision and Z or numeric offset
_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$"
)


def parse_timestamp(text: str) -> datetime:
    """Parse an API timestamp, keeping the offset it was sent with.

    Both GitLab (``2024-01-05T10:00:00.000+01:00``) and Graph
    (``2024-01-05T09:00:00.1234567Z``) formats are accepted.

    Raises:
        ValueError: If the text is not an ISO-8601 timestamp.
    """
    match = _TIMESTAMP_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid timestamp: {text!r}")
    base, fraction, offset = match.groups()
    normalized = base.replace(" ", "T")
    if fraction:
        normalized += "." + fraction[:6].ljust(6, "0")
    if offset == "Z":
        normalized += "+00:00"
    elif offset:
        if ":" not in offset:
            offset = offset[:3] + ":" + offset[3:]
        normalized += offset
    return datetime.fromisoformat(normalized)


# ---------------------------------------------------------------------------
# GitLab
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Project:
    """A GitLab project the user is a member of."""
    id: int
    name: str                # path_with_namespace, e.g. "group/app"


@dataclass(frozen=True)
class Note:
    """A single note inside a merge request discussion."""
    id: int
    body: str
    author: str              # username
    created_at: datetime
    system: bool             # True for generated notes like "added 2 commits"


@dataclass(frozen=True)
class Discussion:
    id: str
    notes: List[Note] = field(default_factory=list)


@dataclass(frozen=True)
class Emoticon:
    """An award emoji given to a merge request."""
    name: str
    user: str                # username
    created_at: datetime


@dataclass(frozen=True)
class FileChange:
    """One file of the merge request diff."""
    old_path: str
    new_path: str
    new_file: bool
    deleted_file: bool
    renamed_file: bool
    diff: str


@dataclass(frozen=True)
class MergeRequest:
    """A merge request with everything fetched for it."""
    project: Project
    iid: int
    title: str
    author: str              # username
    created_at: datetime
    state: str               # "opened", "merged", "closed", "locked"
    merged_at: Optional[datetime] = None
    merged_by: Optional[str] = None
    discussions: List[Discussion] = field(default_factory=list)
    emoticons: List[Emoticon] = field(default_factory=list)
    changes: List[FileChange] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class User:
    id: str
    name: str


@dataclass(frozen=True)
class Team:
    id: str
    name: str


@dataclass(frozen=True)
class Channel:
    """A team channel. Members are not listed (needs extra permissions)."""
    team: Team
    id: str
    name: str


@dataclass(frozen=True)
class Chat:
    """A one-on-one, group or meeting chat."""
    id: str
    members: List[User] = field(default_factory=list)
    type: str = ""
    topic: Optional[str] = None


@dataclass(frozen=True)
class Reaction:
    reaction_type: str
    user_id: str
    created: datetime


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class HtmlContent:
    html: str


MessageContent = Union[TextContent, HtmlContent]


@dataclass(frozen=True)
class UserMention:
    user: User


@dataclass(frozen=True)
class TextMention:
    text: str


Mention = Union[UserMention, TextMention]


@dataclass(frozen=True)
class Message:
    """A channel or chat message."""
    id: str
    author: Optional[User]   # None when the message was generated by a bot
    created: datetime
    body: MessageContent
    subject: Optional[str] = None
    reactions: FrozenSet[Reaction] = frozenset()
    mentions: FrozenSet[Mention] = frozenset()


@dataclass(frozen=True)
class MessageWithReplies:
    message: Message
    replies: List[Message] = field(default_factory=list)


@dataclass(frozen=True)
class ChannelWithMessages:
    channel: Channel
    messages: List[MessageWithReplies] = field(default_factory=list)


@dataclass(frozen=True)
class ChatWithMessages:
    """Chat messages are wrapped in MessageWithReplies with no replies."""
    chat: Chat
    messages: List[MessageWithReplies] = field(default_factory=list)


@dataclass(frozen=True)
class AllConversations:
    channels: List[ChannelWithMessages] = field(default_factory=list)
    chats: List[ChatWithMessages] = field(default_factory=list)
