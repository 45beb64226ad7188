"""SQLite snapshot store.

Keeps the last downloaded snapshot of GitLab merge requests and Teams
conversations. Every entity is stored as a JSON document next to the
columns needed to find it again.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, List, Optional

from timesheet.activity_data import (
    AllConversations,
    Channel,
    ChannelWithMessages,
    Chat,
    ChatWithMessages,
    Discussion,
    Emoticon,
    FileChange,
    HtmlContent,
    MergeRequest,
    Message,
    MessageWithReplies,
    Note,
    Project,
    Reaction,
    Team,
    TextContent,
    TextMention,
    UnsupportedContentError,
    User,
    UserMention,
    parse_timestamp,
)

logger = logging.getLogger("timesheet.store")

DB_FILE_NAME = "timesheet.db"

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS merge_requests (
    project_id INTEGER,
    iid INTEGER,
    created TEXT,
    json TEXT,
    PRIMARY KEY (project_id, iid)
);
CREATE TABLE IF NOT EXISTS channels (
    team_id TEXT,
    id TEXT,
    name TEXT,
    team_name TEXT,
    json TEXT,
    last_download TEXT,
    PRIMARY KEY (team_id, id)
);
CREATE TABLE IF NOT EXISTS channel_messages (
    team_id TEXT,
    channel_id TEXT,
    id TEXT,
    created TEXT,
    json TEXT,
    PRIMARY KEY (team_id, channel_id, id)
);
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    name TEXT,
    json TEXT,
    last_download TEXT
);
CREATE TABLE IF NOT EXISTS chat_messages (
    chat_id TEXT,
    id TEXT,
    created TEXT,
    json TEXT,
    PRIMARY KEY (chat_id, id)
);
"""


def default_db_path(data_dir: str) -> str:
    return os.path.join(data_dir, DB_FILE_NAME)


# ---------------------------------------------------------------------------
# JSON encoding
# ---------------------------------------------------------------------------

def _encode(value: Any) -> Any:
    """Make dataclass dicts JSON friendly: timestamps become ISO strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_encode(v) for v in value]
    return value


def _ts(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def merge_request_to_dict(mr: MergeRequest) -> dict:
    return _encode(asdict(mr))


def merge_request_from_dict(raw: dict) -> MergeRequest:
    return MergeRequest(
        project=Project(**raw["project"]),
        iid=raw["iid"],
        title=raw["title"],
        author=raw["author"],
        created_at=parse_timestamp(raw["created_at"]),
        state=raw["state"],
        merged_at=_ts(raw.get("merged_at")),
        merged_by=raw.get("merged_by"),
        discussions=[
            Discussion(
                id=d["id"],
                notes=[
                    Note(
                        id=n["id"],
                        body=n["body"],
                        author=n["author"],
                        created_at=parse_timestamp(n["created_at"]),
                        system=n["system"],
                    )
                    for n in d["notes"]
                ],
            )
            for d in raw.get("discussions", [])
        ],
        emoticons=[
            Emoticon(name=e["name"], user=e["user"], created_at=parse_timestamp(e["created_at"]))
            for e in raw.get("emoticons", [])
        ],
        changes=[FileChange(**c) for c in raw.get("changes", [])],
    )


def message_to_dict(message: Message) -> dict:
    """Encode a message; the body and mentions carry a ``type`` tag."""
    if isinstance(message.body, TextContent):
        body = {"type": "text", "content": message.body.text}
    elif isinstance(message.body, HtmlContent):
        body = {"type": "html", "content": message.body.html}
    else:
        raise UnsupportedContentError(f"Cannot store content of message {message.id}")
    mentions = []
    for m in message.mentions:
        if isinstance(m, UserMention):
            mentions.append({"type": "user", "user": asdict(m.user)})
        else:
            mentions.append({"type": "other", "text": m.text})
    return {
        "id": message.id,
        "author": asdict(message.author) if message.author else None,
        "created": message.created.isoformat(),
        "subject": message.subject,
        "body": body,
        "reactions": [_encode(asdict(r)) for r in message.reactions],
        "mentions": mentions,
    }


def message_from_dict(raw: dict) -> Message:
    body_type = raw["body"]["type"]
    if body_type == "text":
        body = TextContent(raw["body"]["content"])
    elif body_type == "html":
        body = HtmlContent(raw["body"]["content"])
    else:
        raise UnsupportedContentError(f"Unknown content type {body_type!r} of message {raw['id']}")
    mentions = frozenset(
        UserMention(User(**m["user"])) if m["type"] == "user" else TextMention(m["text"])
        for m in raw.get("mentions", [])
    )
    return Message(
        id=raw["id"],
        author=User(**raw["author"]) if raw.get("author") else None,
        created=parse_timestamp(raw["created"]),
        body=body,
        subject=raw.get("subject"),
        reactions=frozenset(
            Reaction(
                reaction_type=r["reaction_type"],
                user_id=r["user_id"],
                created=parse_timestamp(r["created"]),
            )
            for r in raw.get("reactions", [])
        ),
        mentions=mentions,
    )


def _thread_to_dict(thread: MessageWithReplies) -> dict:
    return {
        "message": message_to_dict(thread.message),
        "replies": [message_to_dict(r) for r in thread.replies],
    }


def _thread_from_dict(raw: dict) -> MessageWithReplies:
    return MessageWithReplies(
        message=message_from_dict(raw["message"]),
        replies=[message_from_dict(r) for r in raw.get("replies", [])],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Store:
    def __init__(self, path: Optional[str] = None):
        """Open (and create) the snapshot database.

        :param path: SQLite file path or None for in-memory.
        """
        self.path = path or ":memory:"
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = threading.RLock()
        with self._lock:
            self._drop_outdated_channel_tables()
            self.conn.executescript(SQL_CREATE)
            self.conn.commit()

    def _drop_outdated_channel_tables(self) -> None:
        # Channels used to be keyed by their id alone, which shared channels repeat.
        columns = [row[1] for row in self.conn.execute("PRAGMA table_info(channels)")]
        if columns and "team_id" not in columns:
            logger.warning("Dropping channels stored in an older format, download them again")
            self.conn.execute("DROP TABLE IF EXISTS channel_messages")
            self.conn.execute("DROP TABLE channels")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # --- GitLab ---

    def save_merge_requests(self, merge_requests: List[MergeRequest]) -> None:
        """Replace the stored merge requests with ``merge_requests``."""
        rows = [
            (mr.project.id, mr.iid, mr.created_at.isoformat(), json.dumps(merge_request_to_dict(mr)))
            for mr in merge_requests
        ]
        with self._lock:
            with self.conn:
                self.conn.execute("DELETE FROM merge_requests")
                self.conn.executemany(
                    "INSERT OR REPLACE INTO merge_requests (project_id, iid, created, json) VALUES (?, ?, ?, ?)",
                    rows,
                )
        logger.debug("Stored %d merge requests", len(rows))

    def load_merge_requests(self) -> List[MergeRequest]:
        """Load merge requests ordered by project and iid."""
        with self._lock:
            cur = self.conn.execute("SELECT json FROM merge_requests ORDER BY project_id, iid")
            rows = cur.fetchall()
        return [merge_request_from_dict(json.loads(r[0])) for r in rows]

    # --- Teams ---

    def save_conversations(self, conversations: AllConversations) -> None:
        """Replace the stored channels and chats with ``conversations``."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self.conn:
                for table in ("channel_messages", "channels", "chat_messages", "chats"):
                    self.conn.execute(f"DELETE FROM {table}")

                for ch in conversations.channels:
                    channel = ch.channel
                    self.conn.execute(
                        "INSERT OR REPLACE INTO channels (team_id, id, name, team_name, json, last_download) VALUES (?, ?, ?, ?, ?, ?)",
                        (channel.team.id, channel.id, channel.name, channel.team.name, json.dumps(asdict(channel)), now),
                    )
                    self.conn.executemany(
                        "INSERT OR REPLACE INTO channel_messages (team_id, channel_id, id, created, json) VALUES (?, ?, ?, ?, ?)",
                        [
                            (channel.team.id, channel.id, t.message.id, t.message.created.isoformat(), json.dumps(_thread_to_dict(t)))
                            for t in ch.messages
                        ],
                    )

                for ch in conversations.chats:
                    chat = ch.chat
                    name = ", ".join(m.name for m in chat.members)
                    self.conn.execute(
                        "INSERT INTO chats (id, name, json, last_download) VALUES (?, ?, ?, ?)",
                        (chat.id, name, json.dumps(asdict(chat)), now),
                    )
                    self.conn.executemany(
                        "INSERT OR REPLACE INTO chat_messages (chat_id, id, created, json) VALUES (?, ?, ?, ?)",
                        [
                            (chat.id, t.message.id, t.message.created.isoformat(), json.dumps(message_to_dict(t.message)))
                            for t in ch.messages
                        ],
                    )
        logger.debug(
            "Stored %d channels and %d chats",
            len(conversations.channels), len(conversations.chats),
        )

    def load_conversations(self) -> AllConversations:
        """Load channels and chats in download order, with their stored messages."""
        with self._lock:
            channel_rows = self.conn.execute("SELECT team_id, id, json FROM channels ORDER BY rowid").fetchall()
            chat_rows = self.conn.execute("SELECT id, json FROM chats ORDER BY rowid").fetchall()

            channels: List[ChannelWithMessages] = []
            for team_id, channel_id, raw in channel_rows:
                data = json.loads(raw)
                channel = Channel(team=Team(**data["team"]), id=data["id"], name=data["name"])
                messages = self.conn.execute(
                    "SELECT json FROM channel_messages WHERE team_id = ? AND channel_id = ? ORDER BY created, id",
                    (team_id, channel_id),
                ).fetchall()
                channels.append(ChannelWithMessages(
                    channel=channel,
                    messages=[_thread_from_dict(json.loads(m[0])) for m in messages],
                ))

            chats: List[ChatWithMessages] = []
            for chat_id, raw in chat_rows:
                data = json.loads(raw)
                chat = Chat(
                    id=data["id"],
                    members=[User(**m) for m in data.get("members", [])],
                    type=data.get("type", ""),
                    topic=data.get("topic"),
                )
                messages = self.conn.execute(
                    "SELECT json FROM chat_messages WHERE chat_id = ? ORDER BY created, id",
                    (chat_id,),
                ).fetchall()
                chats.append(ChatWithMessages(
                    chat=chat,
                    messages=[MessageWithReplies(message=message_from_dict(json.loads(m[0]))) for m in messages],
                ))

        return AllConversations(channels=channels, chats=chats)
