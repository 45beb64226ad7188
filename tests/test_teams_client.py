"""Unit tests for teams_client.py.

All Graph and login calls are mocked.
Run with: python3 -m pytest tests/test_teams_client.py -v
"""

import json
import urllib.error
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from conftest import ALICE
from timesheet.activity_data import (
    Channel,
    Chat,
    HtmlContent,
    Message,
    Team,
    TextContent,
    TextMention,
    UnsupportedContentError,
    UserMention,
)
from timesheet.config import TeamsConfig
from timesheet.teams_client import (
    GraphClient,
    convert_message,
    fetch_conversations,
    get_access_token,
    list_channel_messages,
    list_chats,
    list_replies,
)

CONFIG = TeamsConfig(app_id="app", access_token="tok", user_id="U1",
                     graph_url="https://graph.example.com/v1.0/")
CHANNEL = Channel(team=Team(id="T1", name="Dev"), id="C1", name="General")


def _raw_message(id="m1", content="hi", content_type="text", **extra):
    raw = {
        "id": id,
        "messageType": "message",
        "createdDateTime": "2024-01-05T10:00:00.123Z",
        "from": {"user": {"id": "U1", "displayName": "Alice"}},
        "body": {"contentType": content_type, "content": content},
        "subject": None,
        "reactions": [],
        "mentions": [],
    }
    raw.update(extra)
    return raw


def _response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode("utf-8")
    resp.__enter__ = MagicMock(return_value=resp)
    resp.__exit__ = MagicMock(return_value=False)
    return resp


def _fake_client(items_by_path):
    """A client whose get_items() answers from ``items_by_path``.

    A value which is an exception instance is raised instead.
    """
    client = MagicMock(spec=GraphClient)

    def get_items(path):
        value = items_by_path[path]
        if isinstance(value, Exception):
            raise value
        return value

    client.get_items.side_effect = get_items
    return client


# ---------------------------------------------------------------------------
# convert_message
# ---------------------------------------------------------------------------

class TestConvertMessage:
    def test_text_message(self):
        msg = convert_message(_raw_message())
        assert msg == Message(id="m1", author=ALICE, created=msg.created, body=TextContent("hi"))
        assert msg.created.microsecond == 123000
        assert msg.created.utcoffset().total_seconds() == 0

    def test_html_message(self):
        msg = convert_message(_raw_message(content="<p>hi</p>", content_type="html"))
        assert msg.body == HtmlContent("<p>hi</p>")

    def test_without_content_is_none(self):
        assert convert_message(_raw_message(body={"contentType": "html", "content": None})) is None

    def test_without_sender_is_none(self):
        assert convert_message(_raw_message(**{"from": None})) is None

    def test_application_sender_has_no_author(self):
        raw = _raw_message(**{"from": {"user": None, "application": {"displayName": "Bot"}}})
        assert convert_message(raw).author is None

    def test_system_event_unsupported(self):
        with pytest.raises(UnsupportedContentError, match="message type"):
            convert_message(_raw_message(messageType="systemEventMessage"))

    def test_unknown_content_type_unsupported(self):
        with pytest.raises(UnsupportedContentError, match="content type"):
            convert_message(_raw_message(content_type="card"))

    def test_blank_subject_is_none(self):
        assert convert_message(_raw_message(subject="  ")).subject is None
        assert convert_message(_raw_message(subject="Release")).subject == "Release"

    def test_reactions_and_mentions(self):
        msg = convert_message(_raw_message(
            reactions=[{
                "reactionType": "like",
                "createdDateTime": "2024-01-05T10:01:00Z",
                "user": {"user": {"id": "U2"}},
            }],
            mentions=[
                {"mentionText": "Alice", "mentioned": {"user": {"id": "U1", "displayName": "Alice"}}},
                {"mentionText": "Dev", "mentioned": {"conversation": {"id": "C1"}}},
            ],
        ))
        reaction, = msg.reactions
        assert (reaction.reaction_type, reaction.user_id) == ("like", "U2")
        assert msg.mentions == frozenset({UserMention(ALICE), TextMention("Dev")})


# ---------------------------------------------------------------------------
# GraphClient
# ---------------------------------------------------------------------------

class TestGraphClient:
    @patch("timesheet.teams_client.urllib.request.urlopen")
    def test_bearer_token_and_base_url(self, mock_urlopen):
        mock_urlopen.return_value = _response({"value": []})
        GraphClient(CONFIG, "tok").get("/me/chats")
        req = mock_urlopen.call_args[0][0]
        assert req.full_url == "https://graph.example.com/v1.0/me/chats"
        assert req.get_header("Authorization") == "Bearer tok"

    @patch("timesheet.teams_client.urllib.request.urlopen")
    def test_follows_next_link(self, mock_urlopen):
        next_link = "https://graph.example.com/v1.0/me/chats?$skiptoken=abc"
        mock_urlopen.side_effect = [
            _response({"value": [{"id": 1}], "@odata.nextLink": next_link}),
            _response({"value": [{"id": 2}]}),
        ]
        assert GraphClient(CONFIG, "tok").get_items("me/chats") == [{"id": 1}, {"id": 2}]
        assert mock_urlopen.call_args_list[1][0][0].full_url == next_link

    @patch("timesheet.teams_client.time.sleep")
    @patch("timesheet.teams_client.urllib.request.urlopen")
    def test_retries_rate_limit(self, mock_urlopen, mock_sleep):
        rate_limited = urllib.error.HTTPError(
            url="u", code=429, msg="Too Many Requests", hdrs=None, fp=BytesIO(b""),
        )
        mock_urlopen.side_effect = [rate_limited, _response({"value": []})]
        assert GraphClient(CONFIG, "tok").get("me/chats") == {"value": []}
        mock_sleep.assert_called_once_with(1)

    @patch("timesheet.teams_client.urllib.request.urlopen")
    def test_http_error_raises_runtime_error(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            url="u", code=403, msg="Forbidden", hdrs=None, fp=BytesIO(b"denied"),
        )
        with pytest.raises(RuntimeError, match="HTTP 403"):
            GraphClient(CONFIG, "tok").get("me/chats")


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

class TestListing:
    def test_chat_members(self):
        client = _fake_client({
            "me/chats": [{"id": "CH1", "chatType": "group", "topic": "Food"}],
            "me/chats/CH1/members": [
                {"userId": "U1", "displayName": "Alice"},
                {"userId": "U2", "displayName": "Bob"},
            ],
        })
        chat, = list_chats(client)
        assert chat.type == "group"
        assert [m.name for m in chat.members] == ["Alice", "Bob"]

    def test_meeting_members_failure_tolerated(self, capsys):
        client = _fake_client({
            "me/chats": [{"id": "M1", "chatType": "meeting", "topic": "Standup"}],
            "me/chats/M1/members": RuntimeError("Graph returned HTTP 403"),
        })
        chat, = list_chats(client)
        assert chat.members == []
        assert "Warning: unable to list members of meeting M1" in capsys.readouterr().err

    def test_group_members_failure_raises(self):
        client = _fake_client({
            "me/chats": [{"id": "G1", "chatType": "group", "topic": None}],
            "me/chats/G1/members": RuntimeError("Graph returned HTTP 403"),
        })
        with pytest.raises(RuntimeError, match="HTTP 403"):
            list_chats(client)

    def test_unsupported_messages_skipped(self, capsys):
        client = _fake_client({
            "teams/T1/channels/C1/messages": [
                _raw_message(id="a"),
                _raw_message(id="b", messageType="systemEventMessage"),
                _raw_message(id="c", body={"contentType": "html", "content": None}),
            ],
        })
        assert [m.id for m in list_channel_messages(client, CHANNEL)] == ["a"]
        assert "Warning: skipping message in channel General" in capsys.readouterr().err

    def test_replies(self):
        parent = convert_message(_raw_message(id="p"))
        client = _fake_client({
            "teams/T1/channels/C1/messages/p/replies": [
                _raw_message(id="r1", replyToId="p"),
                _raw_message(id="x", replyToId=None),
            ],
        })
        assert [m.id for m in list_replies(client, CHANNEL, parent)] == ["r1"]

    def test_reply_to_other_message_raises(self):
        parent = convert_message(_raw_message(id="p"))
        client = _fake_client({
            "teams/T1/channels/C1/messages/p/replies": [_raw_message(id="r1", replyToId="q")],
        })
        with pytest.raises(RuntimeError, match="not reply to message p"):
            list_replies(client, CHANNEL, parent)

    @patch("timesheet.teams_client.GraphClient")
    def test_fetch_conversations(self, mock_client_cls):
        mock_client_cls.return_value = _fake_client({
            "me/joinedTeams": [{"id": "T1", "displayName": "Dev"}],
            "teams/T1/channels": [{"id": "C1", "displayName": "General"}],
            "teams/T1/channels/C1/messages": [_raw_message(id="p")],
            "teams/T1/channels/C1/messages/p/replies": [_raw_message(id="r", replyToId="p")],
            "me/chats": [{"id": "CH1", "chatType": "oneOnOne", "topic": None}],
            "me/chats/CH1/members": [{"userId": "U1", "displayName": "Alice"}],
            "chats/CH1/messages": [_raw_message(id="c")],
        })
        result = fetch_conversations(CONFIG)
        thread, = result.channels[0].messages
        assert result.channels[0].channel == CHANNEL
        assert [r.id for r in thread.replies] == ["r"]
        assert result.chats[0].chat == Chat(id="CH1", members=[ALICE], type="oneOnOne")
        assert [t.message.id for t in result.chats[0].messages] == ["c"]
        assert all(t.replies == [] for t in result.chats[0].messages)


# ---------------------------------------------------------------------------
# get_access_token
# ---------------------------------------------------------------------------

class TestGetAccessToken:
    def test_configured_token(self):
        assert get_access_token(CONFIG) == "tok"

    def test_nothing_configured(self):
        with pytest.raises(ValueError, match="app_id"):
            get_access_token(TeamsConfig())

    @patch("timesheet.teams_client.time.sleep")
    @patch("timesheet.teams_client._post_form")
    def test_device_code_flow(self, mock_post, mock_sleep, capsys):
        mock_post.side_effect = [
            {"device_code": "dc", "message": "Go to https://microsoft.com/devicelogin", "interval": 1},
            {"error": "authorization_pending"},
            {"error": "slow_down"},
            {"access_token": "fresh"},
        ]
        assert get_access_token(TeamsConfig(app_id="app")) == "fresh"
        assert "devicelogin" in capsys.readouterr().err
        assert [c[0][0] for c in mock_sleep.call_args_list] == [1, 1, 6]
        assert mock_post.call_args[0][1]["device_code"] == "dc"

    @patch("timesheet.teams_client.time.sleep")
    @patch("timesheet.teams_client._post_form")
    def test_declined_login(self, mock_post, mock_sleep):
        mock_post.side_effect = [
            {"device_code": "dc", "message": "", "interval": 1},
            {"error": "authorization_declined", "error_description": "User declined"},
        ]
        with pytest.raises(RuntimeError, match="User declined"):
            get_access_token(TeamsConfig(app_id="app"))

    @patch("timesheet.teams_client._post_form")
    def test_device_code_request_failed(self, mock_post):
        mock_post.return_value = {"error": "invalid_client", "error_description": "Unknown app"}
        with pytest.raises(RuntimeError, match="Unknown app"):
            get_access_token(TeamsConfig(app_id="app"))
