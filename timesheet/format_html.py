"""HTML report for timesheet.

Builds the report as a BeautifulSoup document: one root <div> holding one
section per day with a merge request table and a conversation digest.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from timesheet.activity_data import (
    AllConversations,
    HtmlContent,
    MergeRequest,
    Message,
    TextContent,
    UnsupportedContentError,
)
from timesheet.summary import (
    ChannelSummary,
    ChatSummary,
    ChatSummaryItem,
    ConversationSummary,
    KeptMessage,
    MrSummary,
    SkippedMessages,
    drop_messages_without_body,
    iter_days,
    summarize_conversations,
    summarize_mrs,
)

logger = logging.getLogger("timesheet.format_html")

MAX_BODY_LENGTH = 500
_ELLIPSIS = "…"
_SKIPPED_MARK = "⋮"

_COLOR_AUTHORED_NEW = "#52be80"    # darker green
_COLOR_AUTHORED = "#abebc6"        # green
_COLOR_ADDED_COMMITS = "#fad7a0"   # orange
_COLOR_OTHER = "white"

_STYLE_IMPORTANT = "color: #000"
_STYLE_CONTEXT = "color: #999"


def html_report(
    date_from: date,
    date_to: date,
    gitlab_user_name: str,
    teams_user_id: str,
    merge_requests: List[MergeRequest],
    conversations: AllConversations,
) -> BeautifulSoup:
    """Render the activity of every day in ``[date_from, date_to]``.

    A day whose messages cannot be rendered gets a notice instead of its
    content; the other days are not affected.

    Args:
        date_from: First day of the report.
        date_to: Last day of the report (inclusive).
        gitlab_user_name: GitLab username whose merge request activity is shown.
        teams_user_id: Teams user id whose messages are important.
        merge_requests: GitLab snapshot.
        conversations: Teams snapshot.

    Returns:
        The report document. Empty root <div> when date_to < date_from.
    """
    conversations = drop_messages_without_body(conversations)
    doc = BeautifulSoup("", "html.parser")
    root = doc.new_tag("div")
    doc.append(root)

    for day in iter_days(date_from, date_to):
        try:
            section = _day_section(doc, day, gitlab_user_name, teams_user_id, merge_requests, conversations)
        except UnsupportedContentError as e:
            logger.warning("Cannot render %s: %s", day.isoformat(), e)
            section = _element(doc, "div", _element(doc, "h2", format_day(day)))
            section.append(_element(doc, "p", f"Activity could not be rendered: {e}"))
        root.append(section)

    return doc


def write_report(doc: BeautifulSoup, path: str) -> None:
    """Serialize the report document to ``path`` as UTF-8."""
    Path(path).write_bytes(str(doc).encode("utf-8"))


def format_day(day: date) -> str:
    """Section heading, e.g. ``Fri 5 (January)``."""
    return f"{day:%a} {day.day} ({day:%B})"


def message_text(message: Message, max_length: int = MAX_BODY_LENGTH) -> str:
    """Plain text of a message body, truncated to ``max_length`` characters.

    Raises:
        UnsupportedContentError: If the body is neither text nor HTML.
    """
    body = message.body
    if body is None:
        # Top-level channel message kept only for its replies.
        return ""
    if isinstance(body, TextContent):
        text = body.text
    elif isinstance(body, HtmlContent):
        text = BeautifulSoup(f"<div>{body.html}</div>", "html.parser").get_text()
    else:
        raise UnsupportedContentError(
            f"Unsupported content {type(body).__name__} in message {message.id}"
        )
    if len(text) > max_length:
        return text[:max_length] + _ELLIPSIS
    return text


def chat_title(summary: ChatSummary) -> str:
    """Comma-joined member names, followed by the topic when there is one."""
    title = ", ".join(m.name for m in summary.chat.members)
    if summary.chat.topic:
        title += f" ({summary.chat.topic})"
    return title


def channel_title(summary: ChannelSummary) -> str:
    return f"{summary.channel.team.name} / {summary.channel.name}"


def row_color(summary: MrSummary) -> str:
    if summary.authored and summary.new:
        return _COLOR_AUTHORED_NEW
    if summary.authored:
        return _COLOR_AUTHORED
    if summary.activity_added_commits > 0:
        return _COLOR_ADDED_COMMITS
    # Only commented, reviewed or merged.
    return _COLOR_OTHER


# --- internal helpers (private) ---


def _element(doc: BeautifulSoup, name: str, *children, style: Optional[str] = None) -> Tag:
    """Create a tag holding ``children``; strings become text nodes."""
    tag = doc.new_tag(name)
    if style is not None:
        tag["style"] = style
    for child in children:
        tag.append(child)
    return tag


def _day_section(
    doc: BeautifulSoup,
    day: date,
    gitlab_user_name: str,
    teams_user_id: str,
    merge_requests: List[MergeRequest],
    conversations: AllConversations,
) -> Tag:
    mr_summaries = summarize_mrs(day, gitlab_user_name, merge_requests)
    conversation_summary = summarize_conversations(day, teams_user_id, conversations)
    return _element(
        doc, "div",
        _element(doc, "h2", format_day(day)),
        _mr_table(doc, mr_summaries),
        _conversations_block(doc, conversation_summary),
    )


def _mr_table(doc: BeautifulSoup, summaries: List[MrSummary]) -> Tag:
    table = doc.new_tag("table")
    table.append(_element(
        doc, "tr",
        *(_element(doc, "th", h) for h in ("Title", "Commits", "Comments", "Reviewed", "Merged")),
    ))
    for s in summaries:
        cells = (
            s.title,
            str(s.activity_added_commits),
            str(len(s.activity_commented)),
            str(s.activity_reviewed),
            str(s.activity_merged),
        )
        table.append(_element(
            doc, "tr",
            *(_element(doc, "td", c) for c in cells),
            style=f"background-color: {row_color(s)}",
        ))
    return table


def _message_body(doc: BeautifulSoup, message: Message, important: bool) -> Tag:
    style = _STYLE_IMPORTANT if important else _STYLE_CONTEXT
    return _element(doc, "span", message_text(message), style=style)


def _chat_items_list(doc: BeautifulSoup, items: List[ChatSummaryItem]) -> Tag:
    if not items:
        return doc.new_tag("span")
    ul = doc.new_tag("ul")
    for item in items:
        if isinstance(item, SkippedMessages):
            ul.append(_element(doc, "li", _SKIPPED_MARK))
        elif isinstance(item, KeptMessage):
            ul.append(_element(doc, "li", _message_body(doc, item.message, item.important)))
    return ul


def _channel_block(doc: BeautifulSoup, summary: ChannelSummary) -> Tag:
    ul = doc.new_tag("ul")
    for item in summary.messages:
        ul.append(_element(
            doc, "li",
            _message_body(doc, item.message, item.important),
            _chat_items_list(doc, item.replies),
        ))
    return _element(doc, "div", _element(doc, "h4", channel_title(summary)), ul)


def _chat_block(doc: BeautifulSoup, summary: ChatSummary) -> Tag:
    return _element(
        doc, "div",
        _element(doc, "h4", chat_title(summary)),
        _chat_items_list(doc, summary.messages),
    )


def _conversations_block(doc: BeautifulSoup, summary: ConversationSummary) -> Tag:
    blocks = [_channel_block(doc, s) for s in summary.channels]
    blocks += [_chat_block(doc, s) for s in summary.chats]
    return _element(doc, "div", *blocks)
