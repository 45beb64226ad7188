#!/usr/bin/env python3
"""Timesheet: day-by-day report of GitLab and Teams activity.

Commands:
  download-gitlab  Download merge requests into the local snapshot
  download-teams   Download channels and chats into the local snapshot
  report           Write the HTML report for a date range
  print-summary    Print a Markdown digest of merge request activity
"""

import argparse
import logging
import sys
from datetime import date, datetime

from timesheet.config import Config, load_config
from timesheet.store import Store, default_db_path


def _fail(message):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _parse_date(value, label):
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        _fail(f"Invalid date format '{value}' for {label}. Use YYYY-MM-DD.")


def resolve_date_range(args):
    """Return (date_from, date_to) from --date or --from/--to, default today."""
    if args.date and (args.date_from or args.date_to):
        _fail("--date cannot be combined with --from/--to.")
    if (args.date_from is None) != (args.date_to is None):
        _fail("--from and --to must be used together.")

    if args.date_from:
        date_from = _parse_date(args.date_from, "--from")
        date_to = _parse_date(args.date_to, "--to")
    elif args.date:
        date_from = date_to = _parse_date(args.date, "--date")
    else:
        date_from = date_to = date.today()

    if date_from > date_to:
        print(
            f"Warning: --from date ({date_from}) is after --to date ({date_to}); the report will be empty.",
            file=sys.stderr,
        )
    return date_from, date_to


def _open_store(args, cfg: Config) -> Store:
    return Store(default_db_path(args.data_dir or cfg.data_dir))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_download_gitlab(args, cfg: Config):
    from timesheet.gitlab_client import fetch_merge_requests

    if not cfg.gitlab.api_url or not cfg.gitlab.api_token:
        _fail("download-gitlab requires gitlab.api_url and gitlab.api_token (or GITLAB_TOKEN env var).")

    print("Downloading data from GitLab", file=sys.stderr)
    try:
        merge_requests = fetch_merge_requests(cfg.gitlab)
    except RuntimeError as e:
        _fail(f"GitLab download failed: {e}")
    with _open_store(args, cfg) as store:
        store.save_merge_requests(merge_requests)
    print(f"Data from GitLab downloaded and saved ({len(merge_requests)} merge requests)", file=sys.stderr)


def cmd_download_teams(args, cfg: Config):
    from timesheet.teams_client import fetch_conversations

    print("Downloading data from Teams", file=sys.stderr)
    try:
        conversations = fetch_conversations(cfg.teams)
    except (ValueError, ConnectionError, RuntimeError) as e:
        _fail(f"Teams download failed: {e}")
    with _open_store(args, cfg) as store:
        store.save_conversations(conversations)
    print(
        f"Data from Teams downloaded and saved ({len(conversations.channels)} channels, "
        f"{len(conversations.chats)} chats)",
        file=sys.stderr,
    )


def cmd_report(args, cfg: Config):
    from timesheet.format_html import html_report, write_report

    if not cfg.gitlab.user_name and not cfg.teams.user_id:
        _fail("report requires gitlab.user_name or teams.user_id in the config file.")

    date_from, date_to = resolve_date_range(args)
    with _open_store(args, cfg) as store:
        merge_requests = store.load_merge_requests()
        conversations = store.load_conversations()

    doc = html_report(
        date_from,
        date_to,
        cfg.gitlab.user_name,
        cfg.teams.user_id,
        merge_requests,
        conversations,
    )
    output_path = args.output or cfg.report_path
    write_report(doc, output_path)
    print(f"Report written to {output_path}", file=sys.stderr)


def cmd_print_summary(args, cfg: Config):
    from timesheet.format_markdown import format_markdown

    if not cfg.gitlab.user_name:
        _fail("print-summary requires gitlab.user_name in the config file.")

    date_from, date_to = resolve_date_range(args)
    with _open_store(args, cfg) as store:
        merge_requests = store.load_merge_requests()
    print(format_markdown(date_from, date_to, cfg.gitlab.user_name, merge_requests))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def _add_date_arguments(parser):
    parser.add_argument("--date", default=None, help="single date, YYYY-MM-DD (default: today); mutually exclusive with --from/--to")
    parser.add_argument("--from", dest="date_from", default=None, help="start of date range, YYYY-MM-DD (requires --to)")
    parser.add_argument("--to", dest="date_to", default=None, help="end of date range, YYYY-MM-DD (requires --from)")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="timesheet",
        description="Day-by-day report of GitLab merge request and Teams activity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="--date and --from/--to are mutually exclusive. When neither is given, defaults to today.",
    )
    parser.add_argument("--config", dest="config_path", default=None, help="path to YAML/JSON config file (default: ~/.config/timesheet/config.yaml)")
    parser.add_argument("--data-dir", dest="data_dir", default=None, help="directory of the local snapshot (overrides config data_dir)")
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="enable debug logging (default: %(default)s)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("download-gitlab", help="download merge requests from GitLab").set_defaults(func=cmd_download_gitlab)
    sub.add_parser("download-teams", help="download channels and chats from Teams").set_defaults(func=cmd_download_teams)

    report = sub.add_parser("report", help="write the HTML report")
    _add_date_arguments(report)
    report.add_argument("--output", default=None, help="output path for the HTML file (default: report_path from config)")
    report.set_defaults(func=cmd_report)

    summary = sub.add_parser("print-summary", help="print a Markdown digest of merge request activity")
    _add_date_arguments(summary)
    summary.set_defaults(func=cmd_print_summary)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config(args.config_path)
    args.func(args, cfg)


if __name__ == "__main__":
    main()
