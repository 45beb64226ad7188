"""GitLab REST API client.

Downloads merge requests of all projects the user is a member of, together
with their discussions, award emoji and changes. Uses only stdlib modules
(json, urllib.request, urllib.error).
"""

from __future__ import annotations

import json
import logging
import sys
import time
import urllib.error
import urllib.request
from typing import Any, Callable, List, Optional

from timesheet.activity_data import (
    Discussion,
    Emoticon,
    FileChange,
    MergeRequest,
    Note,
    Project,
    parse_timestamp,
)
from timesheet.config import GitLabConfig

logger = logging.getLogger("timesheet.gitlab_client")

PER_PAGE = 100


class _RateLimitError(RuntimeError):
    """Internal error raised when GitLab answers 429 Too Many Requests."""


def request(config: GitLabConfig, path: str, timeout: int = 60) -> Any:
    """GET ``<api_url>/v4/<path>`` and return the decoded JSON body.

    Raises:
        RuntimeError: If the request fails or the response is not JSON.
    """
    url = config.api_url.rstrip("/") + "/v4/" + path.lstrip("/")
    req = urllib.request.Request(
        url,
        headers={
            "Private-Token": config.api_token,
            "Accept-Charset": "utf-8",
        },
    )
    logger.debug("GET %s", url)

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            # GitLab does not send the encoding back.
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        if e.code == 429:
            raise _RateLimitError(f"GitLab rate limit hit for {path}") from e
        body_text = ""
        try:
            body_text = e.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        raise RuntimeError(f"GitLab returned HTTP {e.code} for {path}: {body_text}") from e
    except urllib.error.URLError as e:
        raise RuntimeError(f"Failed to connect to GitLab: {e.reason}") from e

    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Unexpected response for {path}: {body[:500]}") from e


def request_with_retry(config: GitLabConfig, path: str, max_retries: int = 3) -> Any:
    """Like request(), retrying with exponential backoff (1s, 2s, 4s) on 429.

    Raises:
        RuntimeError: After exhausting retries or on other errors.
    """
    for attempt in range(max_retries):
        try:
            return request(config, path)
        except _RateLimitError:
            if attempt == max_retries - 1:
                break
            wait = 2 ** attempt
            print(f"Rate limited, retrying in {wait}s...", file=sys.stderr)
            time.sleep(wait)
    raise RuntimeError("GitLab rate limit exceeded after retries")


def request_all_pages(
    config: GitLabConfig,
    path: str,
    parse: Optional[Callable[[dict], Any]] = None,
) -> list:
    """Fetch pages of ``path`` until an empty page comes back.

    Args:
        config: GitLab configuration.
        path: API path, may already contain query parameters.
        parse: Optional converter applied to every item.

    Returns:
        All items of all pages.
    """
    separator = "&" if "?" in path else "?"
    result: list = []
    page = 1
    while True:
        items = request_with_retry(config, f"{path}{separator}per_page={PER_PAGE}&page={page}")
        if not isinstance(items, list):
            raise RuntimeError(f"Expected a list from {path}, got {type(items).__name__}")
        if not items:
            return result
        result.extend(parse(item) if parse else item for item in items)
        page += 1


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------

def _username(user: Optional[dict]) -> str:
    return (user or {}).get("username", "")


def _optional_timestamp(value: Optional[str]):
    return parse_timestamp(value) if value else None


def parse_project(raw: dict) -> Project:
    return Project(id=raw["id"], name=raw.get("path_with_namespace") or raw.get("name", ""))


def parse_note(raw: dict) -> Note:
    return Note(
        id=raw["id"],
        body=raw.get("body") or "",
        author=_username(raw.get("author")),
        created_at=parse_timestamp(raw["created_at"]),
        system=bool(raw.get("system", False)),
    )


def parse_discussion(raw: dict) -> Discussion:
    return Discussion(id=str(raw["id"]), notes=[parse_note(n) for n in raw.get("notes") or []])


def parse_emoticon(raw: dict) -> Emoticon:
    return Emoticon(
        name=raw.get("name", ""),
        user=_username(raw.get("user")),
        created_at=parse_timestamp(raw["created_at"]),
    )


def parse_changes(raw: dict) -> List[FileChange]:
    """Parse the ``changes`` array of a merge request changes response."""
    return [
        FileChange(
            old_path=c.get("old_path", ""),
            new_path=c.get("new_path", ""),
            new_file=bool(c.get("new_file")),
            deleted_file=bool(c.get("deleted_file")),
            renamed_file=bool(c.get("renamed_file")),
            diff=c.get("diff") or "",
        )
        for c in raw.get("changes") or []
    ]


def parse_merge_request(
    raw: dict,
    project: Project,
    discussions: List[Discussion],
    emoticons: List[Emoticon],
    changes: List[FileChange],
) -> MergeRequest:
    merged_at = _optional_timestamp(raw.get("merged_at"))
    merged_by = _username(raw.get("merged_by") or raw.get("merge_user")) or None
    if raw.get("state") == "merged" and (merged_at is None or merged_by is None):
        print(
            f"Warning: merged MR !{raw.get('iid')} in {project.name} lacks merge time or user",
            file=sys.stderr,
        )
    return MergeRequest(
        project=project,
        iid=raw["iid"],
        title=raw.get("title", ""),
        author=_username(raw.get("author")),
        created_at=parse_timestamp(raw["created_at"]),
        state=raw.get("state", ""),
        merged_at=merged_at,
        merged_by=merged_by,
        discussions=discussions,
        emoticons=emoticons,
        changes=changes,
    )


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

def list_projects(config: GitLabConfig) -> List[Project]:
    return request_all_pages(config, "projects?membership=true", parse_project)


def list_merge_requests(config: GitLabConfig, project_id: int) -> List[dict]:
    return request_all_pages(config, f"projects/{project_id}/merge_requests?scope=all")


def list_discussions(config: GitLabConfig, project_id: int, mr_iid: int) -> List[Discussion]:
    path = f"projects/{project_id}/merge_requests/{mr_iid}/discussions"
    return request_all_pages(config, path, parse_discussion)


def list_award_emoji(config: GitLabConfig, project_id: int, mr_iid: int) -> List[Emoticon]:
    path = f"projects/{project_id}/merge_requests/{mr_iid}/award_emoji"
    return request_all_pages(config, path, parse_emoticon)


def get_changes(config: GitLabConfig, project_id: int, mr_iid: int) -> List[FileChange]:
    path = f"projects/{project_id}/merge_requests/{mr_iid}/changes"
    return parse_changes(request_with_retry(config, path))


def fetch_merge_requests(config: GitLabConfig) -> List[MergeRequest]:
    """Download every merge request of every project the user belongs to."""
    result: List[MergeRequest] = []
    for project in list_projects(config):
        raw_mrs = list_merge_requests(config, project.id)
        logger.debug("Project %s: %d merge requests", project.name, len(raw_mrs))
        for raw in raw_mrs:
            iid = raw["iid"]
            result.append(parse_merge_request(
                raw,
                project,
                discussions=list_discussions(config, project.id, iid),
                emoticons=list_award_emoji(config, project.id, iid),
                changes=get_changes(config, project.id, iid),
            ))
    return result
