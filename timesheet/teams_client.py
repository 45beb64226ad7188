"""Microsoft Teams client over the Graph REST API.

Downloads channels of joined teams and chats of the signed-in user with all
their messages. Uses only stdlib modules (json, urllib.request, urllib.error).

Authentication (resolution order):
1. TeamsConfig.access_token (or TEAMS_ACCESS_TOKEN env var)
2. OAuth device code flow for TeamsConfig.app_id; the user is asked to enter
   a code in the browser.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Iterator, List, Optional

from timesheet.activity_data import (
    AllConversations,
    Channel,
    ChannelWithMessages,
    Chat,
    ChatWithMessages,
    HtmlContent,
    Message,
    MessageWithReplies,
    Reaction,
    Team,
    TextContent,
    TextMention,
    UnsupportedContentError,
    User,
    UserMention,
    parse_timestamp,
)
from timesheet.config import TeamsConfig

logger = logging.getLogger("timesheet.teams_client")

_AUTHORITY = "https://login.microsoftonline.com/common/oauth2/v2.0"
SCOPES = ["User.Read", "Chat.Read", "Team.ReadBasic.All", "Channel.ReadBasic.All"]
_DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


class _RateLimitError(RuntimeError):
    """Internal error raised when Graph answers 429 Too Many Requests."""


def _post_form(url: str, fields: dict, timeout: int = 30) -> dict:
    """POST a form and return the JSON response, also for HTTP 400 answers."""
    body = urllib.parse.urlencode(fields).encode("utf-8")
    req = urllib.request.Request(url, data=body, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        # The token endpoint reports "authorization_pending" as HTTP 400.
        try:
            return json.loads(e.read().decode("utf-8"))
        except (ValueError, OSError):
            raise RuntimeError(f"Login endpoint returned HTTP {e.code}") from e
    except urllib.error.URLError as e:
        raise ConnectionError(f"Failed to connect to {url}: {e.reason}") from e


def get_access_token(config: TeamsConfig) -> str:
    """Return a Graph access token, running the device code flow if needed.

    Raises:
        ValueError: If neither a token nor an app id is configured.
        RuntimeError: If the login fails or expires.
    """
    if config.access_token:
        return config.access_token
    if not config.app_id:
        raise ValueError("Teams access needs teams.access_token or teams.app_id in the config file.")

    scope = " ".join(SCOPES)
    device = _post_form(f"{_AUTHORITY}/devicecode", {"client_id": config.app_id, "scope": scope})
    if "device_code" not in device:
        raise RuntimeError(f"Device code request failed: {device.get('error_description', device)}")

    # Show the device code and where to enter it.
    print(device.get("message", ""), file=sys.stderr)

    interval = int(device.get("interval", 5))
    deadline = time.monotonic() + int(device.get("expires_in", 900))
    while time.monotonic() < deadline:
        time.sleep(interval)
        token = _post_form(f"{_AUTHORITY}/token", {
            "grant_type": _DEVICE_CODE_GRANT,
            "client_id": config.app_id,
            "device_code": device["device_code"],
        })
        if "access_token" in token:
            return token["access_token"]
        error = token.get("error")
        if error == "slow_down":
            interval += 5
        elif error != "authorization_pending":
            raise RuntimeError(f"Login failed: {token.get('error_description', error)}")
    raise RuntimeError("Login failed: device code expired")


class GraphClient:
    """Minimal authenticated Graph API client."""

    def __init__(self, config: TeamsConfig, token: str, max_retries: int = 3):
        self.base_url = config.graph_url.rstrip("/")
        self.token = token
        self.max_retries = max_retries

    def _get(self, url: str, timeout: int = 60) -> dict:
        req = urllib.request.Request(url, headers={
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        })
        logger.debug("GET %s", url)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            if e.code == 429:
                raise _RateLimitError(f"Graph rate limit hit for {url}") from e
            body_text = ""
            try:
                body_text = e.read().decode("utf-8", errors="replace")[:500]
            except OSError:
                pass
            raise RuntimeError(f"Graph returned HTTP {e.code} for {url}: {body_text}") from e
        except urllib.error.URLError as e:
            raise RuntimeError(f"Failed to connect to Graph: {e.reason}") from e

    def get(self, path_or_url: str) -> dict:
        """GET a path relative to the Graph base URL (or an absolute next link).

        Retries with exponential backoff (1s, 2s, 4s) on HTTP 429.
        """
        if path_or_url.startswith("https://"):
            url = path_or_url
        else:
            url = f"{self.base_url}/{path_or_url.lstrip('/')}"
        for attempt in range(self.max_retries):
            try:
                return self._get(url)
            except _RateLimitError:
                if attempt == self.max_retries - 1:
                    break
                wait = 2 ** attempt
                print(f"Rate limited, retrying in {wait}s...", file=sys.stderr)
                time.sleep(wait)
        raise RuntimeError("Graph rate limit exceeded after retries")

    def iter_pages(self, path: str) -> Iterator[List[dict]]:
        """Yield the ``value`` array of each page, following ``@odata.nextLink``."""
        next_link: Optional[str] = path
        while next_link:
            page = self.get(next_link)
            yield page.get("value") or []
            next_link = page.get("@odata.nextLink")

    def get_items(self, path: str) -> List[dict]:
        return [item for page in self.iter_pages(path) for item in page]


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------

def _user(raw: Optional[dict]) -> Optional[User]:
    if not raw:
        return None
    return User(id=raw.get("id", ""), name=raw.get("displayName") or "")


def convert_message(raw: dict) -> Optional[Message]:
    """Convert a Graph chatMessage.

    Returns:
        The message, or None for messages without content or sender
        (deleted messages and the like).

    Raises:
        UnsupportedContentError: For message types other than ``message`` or
            content types other than ``text`` and ``html``.
    """
    body = raw.get("body") or {}
    sender = raw.get("from")
    if body.get("content") is None or sender is None:
        return None

    message_type = raw.get("messageType", "message")
    if message_type != "message":
        raise UnsupportedContentError(f"Unexpected message type {message_type!r} of message {raw.get('id')}")

    content_type = (body.get("contentType") or "").lower()
    if content_type == "html":
        content = HtmlContent(body["content"])
    elif content_type == "text":
        content = TextContent(body["content"])
    else:
        raise UnsupportedContentError(f"Unexpected content type {content_type!r} of message {raw.get('id')}")

    reactions = frozenset(
        Reaction(
            reaction_type=r.get("reactionType", ""),
            user_id=((r.get("user") or {}).get("user") or {}).get("id", ""),
            created=parse_timestamp(r["createdDateTime"]),
        )
        for r in raw.get("reactions") or []
    )

    mentions = set()
    for m in raw.get("mentions") or []:
        mentioned_user = _user((m.get("mentioned") or {}).get("user"))
        if mentioned_user is None:
            mentions.add(TextMention(m.get("mentionText") or ""))
        else:
            mentions.add(UserMention(mentioned_user))

    subject = raw.get("subject")
    if subject is not None and not subject.strip():
        subject = None

    return Message(
        id=raw["id"],
        # None when the message was sent by a bot or an application.
        author=_user(sender.get("user")),
        created=parse_timestamp(raw["createdDateTime"]),
        body=content,
        subject=subject,
        reactions=reactions,
        mentions=frozenset(mentions),
    )


def _convert_all(raw_messages: List[dict], where: str) -> List[Message]:
    result: List[Message] = []
    for raw in raw_messages:
        try:
            message = convert_message(raw)
        except UnsupportedContentError as e:
            print(f"Warning: skipping message in {where}: {e}", file=sys.stderr)
            continue
        if message is not None:
            result.append(message)
    return result


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

def list_teams(client: GraphClient) -> List[Team]:
    return [Team(id=t["id"], name=t.get("displayName") or "") for t in client.get_items("me/joinedTeams")]


def list_channels(client: GraphClient) -> List[Channel]:
    # Listing channel members needs more permissions, so channels have none.
    channels: List[Channel] = []
    for team in list_teams(client):
        for ch in client.get_items(f"teams/{team.id}/channels"):
            channels.append(Channel(team=team, id=ch["id"], name=ch.get("displayName") or ""))
    return channels


def list_chats(client: GraphClient) -> List[Chat]:
    chats: List[Chat] = []
    for ch in client.get_items("me/chats"):
        chat_type = ch.get("chatType") or ""
        topic = ch.get("topic")
        try:
            members = [
                User(id=m.get("userId") or m.get("id", ""), name=m.get("displayName") or "")
                for m in client.get_items(f"me/chats/{ch['id']}/members")
            ]
        except RuntimeError as e:
            if chat_type != "meeting":
                raise
            print(f"Warning: unable to list members of meeting {ch['id']} about {topic!r}: {e}", file=sys.stderr)
            members = []
        chats.append(Chat(id=ch["id"], members=members, type=chat_type, topic=topic))
    return chats


def list_channel_messages(client: GraphClient, channel: Channel) -> List[Message]:
    raw = client.get_items(f"teams/{channel.team.id}/channels/{channel.id}/messages")
    return _convert_all(raw, f"channel {channel.name}")


def list_chat_messages(client: GraphClient, chat: Chat) -> List[Message]:
    return _convert_all(client.get_items(f"chats/{chat.id}/messages"), f"chat {chat.id}")


def list_replies(client: GraphClient, channel: Channel, message: Message) -> List[Message]:
    """List replies to a channel message.

    Raises:
        RuntimeError: If Graph returns a reply to a different message.
    """
    path = f"teams/{channel.team.id}/channels/{channel.id}/messages/{message.id}/replies"
    replies: List[dict] = []
    for raw in client.get_items(path):
        reply_to = raw.get("replyToId")
        if reply_to is None:
            continue
        if reply_to != message.id:
            raise RuntimeError(
                f"Got reply in channel {channel.name} which is not reply to message {message.id}"
            )
        replies.append(raw)
    return _convert_all(replies, f"channel {channel.name}")


def fetch_channel(client: GraphClient, channel: Channel) -> ChannelWithMessages:
    logger.info(
        "Downloading channel %s (%s) in team %s (%s)",
        channel.id, channel.name, channel.team.id, channel.team.name,
    )
    messages = [
        MessageWithReplies(message=m, replies=list_replies(client, channel, m))
        for m in list_channel_messages(client, channel)
    ]
    return ChannelWithMessages(channel=channel, messages=messages)


def fetch_chat(client: GraphClient, chat: Chat) -> ChatWithMessages:
    about = f" about {chat.topic}" if chat.topic else ""
    logger.info(
        "Downloading %s chat %s with %s%s",
        chat.type, chat.id, [m.name for m in chat.members], about,
    )
    # There are no replies in chats.
    messages = [MessageWithReplies(message=m) for m in list_chat_messages(client, chat)]
    return ChatWithMessages(chat=chat, messages=messages)


def fetch_conversations(config: TeamsConfig) -> AllConversations:
    """Download all channels and chats of the signed-in user."""
    client = GraphClient(config, get_access_token(config))
    return AllConversations(
        channels=[fetch_channel(client, ch) for ch in list_channels(client)],
        chats=[fetch_chat(client, ch) for ch in list_chats(client)],
    )
