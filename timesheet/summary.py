"""Per-day activity summaries for merge requests and conversations.

Turns the fetched snapshot into small, renderer-agnostic records:

- summarize_mrs(): what a GitLab user did on merge requests on a given day
- summarize_conversations(): the user's Teams messages of a day together with
  the messages leading up to them

A "day" is a work day which starts at 03:00 rather than at midnight, see
belongs_to_day().
"""

from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Union

from timesheet.activity_data import (
    AllConversations,
    Channel,
    ChannelWithMessages,
    Chat,
    ChatWithMessages,
    MergeRequest,
    Message,
    MessageWithReplies,
)

logger = logging.getLogger("timesheet.summary")

# Work done shortly after midnight still counts to the previous day.
WORK_DAY_OFFSET_HOURS = 3.0

# Number of messages kept per important message, the message included.
CONTEXT_WINDOW = 4

_ADDED_COMMITS_RE = re.compile(r"^added \d+ commit")
# System notes that look like commit notes but are not, e.g. "added a commit".
_ADDED_COMMITS_LOOKALIKE_RE = re.compile(r"^\s*added\b.*commit", re.IGNORECASE)


def belongs_to_day(day: date, instant: datetime) -> bool:
    """Check whether ``instant`` falls into the work day ``day``.

    The work day spans ``[day 03:00, next day 03:00)`` in the UTC offset of
    ``instant`` itself, so every timestamp is judged in its own local time.
    """
    offset = instant.utcoffset()
    tz = timezone(offset) if offset is not None else None
    start = datetime.combine(day, time(), tzinfo=tz) + timedelta(hours=WORK_DAY_OFFSET_HOURS)
    stop = start + timedelta(days=1)
    return start <= instant < stop


def iter_days(date_from: date, date_to: date) -> Iterator[date]:
    """Yield every calendar day from ``date_from`` to ``date_to`` inclusive.

    Yields nothing when ``date_to`` precedes ``date_from``.
    """
    days = (date_from + timedelta(days=n) for n in itertools.count())
    return itertools.takewhile(lambda d: d <= date_to, days)


# ---------------------------------------------------------------------------
# Merge requests
# ---------------------------------------------------------------------------

@dataclass
class MrSummary:
    """Activities of one user on one merge request during one day."""
    title: str
    new: bool                       # MR was created on the day
    authored: bool                  # MR was authored by the user
    activity_added_commits: int     # "added N commits" notes by the user
    activity_commented: List[str]   # comment bodies, in discussion order
    activity_reviewed: bool         # user gave an award emoji (review proxy)
    activity_merged: bool           # user merged the MR on the day
    merge_request: MergeRequest = field(repr=False, compare=False)

    @property
    def has_activity(self) -> bool:
        return (
            self.activity_added_commits > 0
            or bool(self.activity_commented)
            or self.activity_reviewed
            or self.activity_merged
        )


def _is_added_commits_note(body: str) -> bool:
    return _ADDED_COMMITS_RE.match(body) is not None


def _summarize_mr(day: date, user_name: str, mr: MergeRequest) -> MrSummary:
    notes = [
        note
        for discussion in mr.discussions
        for note in discussion.notes
        if belongs_to_day(day, note.created_at) and note.author == user_name
    ]

    # TODO: count commits from the MR commit list instead of system notes;
    # one "added N commits" note may stand for several pushes.
    added_commits = 0
    commented: List[str] = []
    for note in notes:
        if not note.system:
            commented.append(note.body)
        elif _is_added_commits_note(note.body):
            added_commits += 1
        elif _ADDED_COMMITS_LOOKALIKE_RE.match(note.body):
            logger.debug("System note %d does not match commit pattern: %.80s", note.id, note.body)
            commented.append(note.body)

    # No approval data is fetched, an award emoji stands in for a finished review.
    reviewed = any(
        belongs_to_day(day, e.created_at) and e.user == user_name
        for e in mr.emoticons
    )

    merged = (
        mr.state == "merged"
        and mr.merged_at is not None
        and belongs_to_day(day, mr.merged_at)
        and mr.merged_by == user_name
    )

    return MrSummary(
        title=mr.title,
        new=belongs_to_day(day, mr.created_at),
        authored=mr.author == user_name,
        activity_added_commits=added_commits,
        activity_commented=commented,
        activity_reviewed=reviewed,
        activity_merged=merged,
        merge_request=mr,
    )


def summarize_mrs(
    day: date,
    user_name: str,
    merge_requests: List[MergeRequest],
    include_created: bool = False,
) -> List[MrSummary]:
    """Summarize the activity of ``user_name`` on each merge request during ``day``.

    Args:
        day: The work day to summarize.
        user_name: GitLab username.
        merge_requests: The fetched snapshot.
        include_created: Also keep merge requests the user opened on ``day``
            without any further activity.

    Returns:
        Summaries with at least one activity, in input order. Being created
        or authored alone is not an activity unless ``include_created`` is set.
    """
    summaries = (_summarize_mr(day, user_name, mr) for mr in merge_requests)
    return [
        s for s in summaries
        if s.has_activity or (include_created and s.new and s.authored)
    ]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SkippedMessages:
    """Stands for one or more consecutive messages left out of a summary."""


@dataclass(frozen=True)
class KeptMessage:
    """A message kept in a summary.

    Messages which are not important are present only as a context for the
    important ones.
    """
    message: Message
    important: bool


ChatSummaryItem = Union[SkippedMessages, KeptMessage]


@dataclass
class ChannelSummaryItem:
    message: Message
    important: bool
    replies: List[ChatSummaryItem] = field(default_factory=list)


@dataclass
class ChannelSummary:
    channel: Channel
    messages: List[ChannelSummaryItem] = field(default_factory=list)


@dataclass
class ChatSummary:
    chat: Chat
    messages: List[ChatSummaryItem] = field(default_factory=list)


@dataclass
class ConversationSummary:
    channels: List[ChannelSummary] = field(default_factory=list)
    chats: List[ChatSummary] = field(default_factory=list)


def _is_from(message: Message, user_id: str) -> bool:
    return message.author is not None and message.author.id == user_id


def _has_body(message: Message) -> bool:
    if message.body is None:
        logger.debug("Skipping message %s without body", message.id)
        return False
    return True


def _keep_with_body(messages: List[Message], where: str) -> List[Message]:
    kept = []
    for message in messages:
        if message.body is None:
            logger.warning("Skipping message %s without body in %s", message.id, where)
        else:
            kept.append(message)
    return kept


def drop_messages_without_body(conversations: AllConversations) -> AllConversations:
    """Remove messages lacking a body, warning once for each.

    Top-level channel messages stay, so that their replies are still
    summarized; they are never important.
    """
    channels = []
    for ch in conversations.channels:
        where = f"channel {ch.channel.name}"
        threads = []
        for thread in ch.messages:
            if thread.message.body is None:
                logger.warning("Message %s without body in %s", thread.message.id, where)
            threads.append(MessageWithReplies(
                message=thread.message,
                replies=_keep_with_body(thread.replies, where),
            ))
        channels.append(ChannelWithMessages(channel=ch.channel, messages=threads))

    chats = []
    for ch in conversations.chats:
        messages = _keep_with_body([t.message for t in ch.messages], f"chat {ch.chat.id}")
        chats.append(ChatWithMessages(chat=ch.chat, messages=[MessageWithReplies(m) for m in messages]))

    return AllConversations(channels=channels, chats=chats)


def summarize_chat_messages(day: date, user_id: str, messages: List[Message]) -> List[ChatSummaryItem]:
    """Select the messages of ``day`` worth showing.

    Messages written by ``user_id`` are important. Each important message is
    kept together with up to 3 messages preceding it. Every run of left out
    messages which precedes a kept message is replaced by one
    SkippedMessages item.

    Returns:
        Chronologically ordered summary items.
    """
    on_day = sorted(
        (m for m in messages if _has_body(m) and belongs_to_day(day, m.created)),
        key=lambda m: m.created,
    )

    # Walk from the newest message; the counter says how many more messages
    # belong to the window of the last important message seen.
    remaining = -1
    items: List[ChatSummaryItem] = []
    for message in reversed(on_day):
        important = _is_from(message, user_id)
        if important:
            remaining = CONTEXT_WINDOW
        remaining -= 1
        if remaining >= 0:
            items.append(KeptMessage(message=message, important=important))
        elif remaining == -1:
            items.append(SkippedMessages())
    items.reverse()
    return items


def summarize_chat(day: date, user_id: str, chat: ChatWithMessages) -> ChatSummary:
    # There are no replies in chats.
    messages = [m.message for m in chat.messages]
    return ChatSummary(chat=chat.chat, messages=summarize_chat_messages(day, user_id, messages))


def summarize_channel(day: date, user_id: str, channel: ChannelWithMessages) -> ChannelSummary:
    """Summarize a channel: top-level messages with their summarized replies.

    A top-level message is kept when it is important itself or when some of
    its replies are kept. A top-level message without a body is never
    important but still carries its replies.
    """
    items: List[ChannelSummaryItem] = []
    for thread in channel.messages:
        message = thread.message
        items.append(ChannelSummaryItem(
            message=message,
            important=(
                message.body is not None
                and belongs_to_day(day, message.created)
                and _is_from(message, user_id)
            ),
            replies=summarize_chat_messages(day, user_id, thread.replies),
        ))
    items = [item for item in items if item.important or item.replies]
    items.sort(key=lambda item: item.message.created)
    return ChannelSummary(channel=channel.channel, messages=items)


def summarize_conversations(day: date, user_id: str, conversations: AllConversations) -> ConversationSummary:
    """Summarize all channels and chats, dropping those with nothing to show."""
    channels = [summarize_channel(day, user_id, ch) for ch in conversations.channels]
    chats = [summarize_chat(day, user_id, ch) for ch in conversations.chats]
    return ConversationSummary(
        channels=[s for s in channels if s.messages],
        chats=[s for s in chats if s.messages],
    )
