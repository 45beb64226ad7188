"""Configuration loader for timesheet.

Reads YAML configuration from ~/.config/timesheet/config.yaml (or a custom
path). JSON configuration files are accepted as well, JSON being a subset of
YAML.

Requires PyYAML (pip install pyyaml).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

import yaml


DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/timesheet/config.yaml")
DEFAULT_DATA_DIR = os.path.expanduser("~/.local/share/timesheet")
DEFAULT_REPORT_PATH = "report.html"
DEFAULT_GRAPH_URL = "https://graph.microsoft.com/v1.0"


@dataclass
class GitLabConfig:
    """GitLab API access and identity."""

    api_url: str = ""        # e.g. https://gitlab.example.com/api
    api_token: str = ""
    user_name: str = ""


@dataclass
class TeamsConfig:
    """Microsoft Graph access and identity."""

    app_id: str = ""         # Azure AD application used for the device code flow
    access_token: str = ""   # skips the device code flow when set
    user_id: str = ""
    graph_url: str = DEFAULT_GRAPH_URL


@dataclass
class Config:
    """Top-level application configuration."""

    gitlab: GitLabConfig = field(default_factory=GitLabConfig)
    teams: TeamsConfig = field(default_factory=TeamsConfig)
    data_dir: str = DEFAULT_DATA_DIR
    report_path: str = DEFAULT_REPORT_PATH


def _expand_path(path: str) -> str:
    """Expand ~ and environment variables in a path."""
    return os.path.expanduser(os.path.expandvars(path))


def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _str(raw: dict, key: str, default: str = "") -> str:
    value = raw.get(key)
    if value is None:
        return default
    return str(value)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from a YAML (or JSON) file.

    Tokens may be overridden by the GITLAB_TOKEN and TEAMS_ACCESS_TOKEN
    environment variables.

    Args:
        config_path: Path to the config file. Defaults to
            ~/.config/timesheet/config.yaml.

    Returns:
        A Config instance. If the config file does not exist or is not a
        mapping, returns a default Config (graceful degradation).
    """
    path = _expand_path(config_path) if config_path else DEFAULT_CONFIG_PATH

    data: dict = {}
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if isinstance(loaded, dict):
            data = loaded

    raw_gitlab = _section(data, "gitlab")
    gitlab = GitLabConfig(
        api_url=_str(raw_gitlab, "api_url"),
        api_token=os.environ.get("GITLAB_TOKEN", "") or _str(raw_gitlab, "api_token"),
        user_name=_str(raw_gitlab, "user_name"),
    )

    raw_teams = _section(data, "teams")
    teams = TeamsConfig(
        app_id=_str(raw_teams, "app_id"),
        access_token=os.environ.get("TEAMS_ACCESS_TOKEN", "") or _str(raw_teams, "access_token"),
        user_id=_str(raw_teams, "user_id"),
        graph_url=_str(raw_teams, "graph_url", DEFAULT_GRAPH_URL),
    )

    data_dir = _str(data, "data_dir")
    report_path = _str(data, "report_path")

    return Config(
        gitlab=gitlab,
        teams=teams,
        data_dir=_expand_path(data_dir) if data_dir else DEFAULT_DATA_DIR,
        report_path=_expand_path(report_path) if report_path else DEFAULT_REPORT_PATH,
    )
