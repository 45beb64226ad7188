"""Markdown digest of merge request activity, with diff statistics."""

from __future__ import annotations

from datetime import date
from typing import List

from timesheet.activity_data import FileChange, MergeRequest
from timesheet.format_html import format_day
from timesheet.summary import MrSummary, iter_days, summarize_mrs


def format_markdown(
    date_from: date,
    date_to: date,
    user_name: str,
    merge_requests: List[MergeRequest],
) -> str:
    """Render the merge request activity of each day as a Markdown string.

    Args:
        date_from: First day.
        date_to: Last day (inclusive).
        user_name: GitLab username.
        merge_requests: GitLab snapshot.

    Returns:
        The full Markdown digest as a single string.
    """
    lines: list[str] = []
    lines.append(f"# Activity of {user_name} — {date_from.isoformat()} .. {date_to.isoformat()}")
    lines.append("")

    for day in iter_days(date_from, date_to):
        lines.append(f"## {format_day(day)}")
        lines.append("")
        summaries = summarize_mrs(day, user_name, merge_requests, include_created=True)
        if not summaries:
            lines.append("_No activity._")
            lines.append("")
            continue
        for summary in summaries:
            mr = summary.merge_request
            lines.append(f"### !{mr.iid} {summary.title} ({mr.project.name})")
            lines.extend(f"- {line}" for line in _change_lines(mr.changes))
            lines.extend(f"- {line}" for line in _activity_lines(summary))
            lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def _diff_stats(changes: List[FileChange]) -> tuple[int, int, int]:
    """Return (files, diff lines, diff chars)."""
    lines = sum(c.diff.count("\n") for c in changes)
    chars = sum(len(c.diff) for c in changes)
    return len(changes), lines, chars


def _change_lines(changes: List[FileChange]) -> list[str]:
    result: list[str] = []
    renamed = sum(1 for c in changes if c.renamed_file)
    if renamed:
        result.append(f"Renamed files {renamed}")
    deleted = sum(1 for c in changes if c.deleted_file)
    if deleted:
        result.append(f"Deleted files {deleted}")

    files, lines, chars = _diff_stats([c for c in changes if c.new_file])
    if files:
        result.append(f"New files {files} (lines {lines}, chars {chars})")

    modified = [c for c in changes if not (c.new_file or c.deleted_file or c.renamed_file)]
    files, lines, chars = _diff_stats(modified)
    if files:
        result.append(f"Changed files {files} (lines {lines}, chars {chars})")
    return result


def _activity_lines(summary: MrSummary) -> list[str]:
    result: list[str] = []
    if summary.new and summary.authored:
        result.append("**Created**")
    if summary.activity_reviewed:
        result.append("**Added emoticon**")
    if summary.activity_commented:
        chars = sum(len(c) for c in summary.activity_commented)
        result.append(f"**Added comment** {len(summary.activity_commented)} (chars {chars})")
    if summary.activity_added_commits:
        result.append(f"**Added commits** {summary.activity_added_commits}")
    if summary.activity_merged:
        result.append("**Merged**")
    return result
