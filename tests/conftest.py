"""Shared pytest fixtures: a small GitLab + Teams snapshot around 2024-01-05."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from timesheet.activity_data import (
    AllConversations,
    Channel,
    ChannelWithMessages,
    Chat,
    ChatWithMessages,
    Discussion,
    FileChange,
    HtmlContent,
    MergeRequest,
    Message,
    MessageWithReplies,
    Note,
    Project,
    Team,
    TextContent,
    User,
)

ALICE = User(id="U1", name="Alice")
BOB = User(id="U2", name="Bob")


def utc(text: str) -> datetime:
    """``utc("2024-01-05 10:00")`` -> aware datetime in UTC."""
    return datetime.strptime(text, "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)


@pytest.fixture
def alice_mr() -> MergeRequest:
    """MR created and merged by alice on 2024-01-05, with a push and a comment."""
    return MergeRequest(
        project=Project(id=7, name="group/app"),
        iid=42,
        title="Add login form",
        author="alice",
        created_at=utc("2024-01-05 09:00"),
        state="merged",
        merged_at=utc("2024-01-05 16:00"),
        merged_by="alice",
        discussions=[
            Discussion(id="d1", notes=[
                Note(id=1, body="added 2 commits\n\n* abc - Fix form", author="alice",
                     created_at=utc("2024-01-05 10:00"), system=True),
            ]),
            Discussion(id="d2", notes=[
                Note(id=2, body="LGTM-fix", author="alice",
                     created_at=utc("2024-01-05 11:00"), system=False),
            ]),
        ],
        changes=[
            FileChange(old_path="login.py", new_path="login.py", new_file=True,
                       deleted_file=False, renamed_file=False, diff="+a\n+b\n"),
            FileChange(old_path="app.py", new_path="app.py", new_file=False,
                       deleted_file=False, renamed_file=False, diff="-x\n+y\n+z\n"),
        ],
    )


@pytest.fixture
def conversations() -> AllConversations:
    """One channel thread answered by alice and one chat with her message."""
    start = utc("2024-01-05 10:00")
    question = Message(id="m1", author=BOB, created=start,
                       body=HtmlContent("<p>Is the <b>build</b> green?</p>"))
    answer = Message(id="m2", author=ALICE, created=start + timedelta(minutes=5),
                     body=TextContent("Yes, merged it."))
    hello = Message(id="c1", author=ALICE, created=start + timedelta(hours=2),
                    body=TextContent("Lunch?"))
    return AllConversations(
        channels=[
            ChannelWithMessages(
                channel=Channel(team=Team(id="T1", name="Dev"), id="C1", name="General"),
                messages=[MessageWithReplies(message=question, replies=[answer])],
            ),
        ],
        chats=[
            ChatWithMessages(
                chat=Chat(id="CH1", members=[ALICE, BOB], type="group", topic="Food"),
                messages=[MessageWithReplies(message=hello)],
            ),
        ],
    )
