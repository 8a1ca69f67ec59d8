#!/usr/bin/env python3
"""
Remote Branch Janitor

This script cleans up stale branches on a git remote. It fetches the
remote, deletes branches that were merged into the target branch a few
days ago, and sends a single email report listing what was removed, what
will be removed soon, and which unmerged branches have gone quiet.
"""

import argparse
import logging
import os
import smtplib
import socket
import sys
from datetime import datetime, timedelta
from email.mime.text import MIMEText
from typing import Optional

import git
import yaml
from jinja2 import Template


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_BRANCH = 'master'
DEFAULT_REMOTE = 'origin'
ALWAYS_PROTECTED_BRANCHES = ['dev']
DEFAULT_GIT_TIMEOUT = 300

# Merged branches are kept this many days after their last commit
MERGED_KEPT_DAYS = 4
# Unmerged branches are reported after this many days without commits
INACTIVE_NOTIFY_DAYS = 14

SECONDS_PER_DAY = 60 * 60 * 24
LAST_COMMIT_FORMAT = '%cI|%cn <%ce>'
COMMIT_DATE_DISPLAY_FORMAT = '%d.%m.%Y %H:%M:%S'
REMOVAL_DATE_DISPLAY_FORMAT = '%d.%m.%Y'

EMAIL_SUBJECT = 'Branches requiring attention'

REPORT_TEMPLATE = """\
{% if removed %}

Removed branches:

{% for author, entries in removed.items() %}
\t{{ author }}
{% for entry in entries %}
\t\t* {{ entry.branch_name }}
{% endfor %}

{% endfor %}
{% endif %}
{% if to_be_removed %}

Branches to be removed:

{% for author, entries in to_be_removed.items() %}
\t{{ author }}
{% for entry in entries %}
\t\t* {{ entry.branch_name }} [last commit on: {{ entry.last_commit_date }}] \
- after {{ entry.days_left }} day(s) on {{ entry.removing_date }}
{% endfor %}

{% endfor %}
{% endif %}
{% if not_merged %}

Branches that are not merged and have no activity within last 2 weeks:

{% for author, entries in not_merged.items() %}
\t{{ author }}
{% for entry in entries %}
\t\t* {{ entry.branch_name }} [last commit on: {{ entry.last_commit_date }}]
{% endfor %}

{% endfor %}
{% endif %}
"""


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


def validate_config(config: dict) -> None:
    """
    Validate the optional settings file.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If a section or key has an unusable value
    """
    if not config:
        raise ConfigurationError("Configuration is empty")

    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    if 'smtp' in config:
        smtp = config['smtp']
        if not isinstance(smtp, dict):
            raise ConfigurationError("The 'smtp' section must be a mapping")
        if not smtp.get('from_email'):
            raise ConfigurationError("Missing required SMTP config key: 'from_email'")
        if 'port' in smtp and not isinstance(smtp['port'], int):
            raise ConfigurationError("SMTP 'port' must be an integer")

    protected = config.get('protected_branches', [])
    if not isinstance(protected, list) or not all(isinstance(b, str) for b in protected):
        raise ConfigurationError("'protected_branches' must be a list of branch names")

    timeout = config.get('git_timeout', DEFAULT_GIT_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigurationError("'git_timeout' must be a positive number of seconds")


def load_config(config_path: str) -> dict:
    """Load and validate configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    validate_config(config)
    return config


def get_smtp_config(config: dict) -> dict:
    """Return SMTP settings, falling back to a local unauthenticated relay."""
    smtp_config = {
        'host': 'localhost',
        'port': 25,
        'use_tls': False,
    }
    smtp_config.update(config.get('smtp') or {})
    smtp_config.setdefault('from_email', f"branch-janitor@{socket.getfqdn()}")
    return smtp_config


def create_git_client(working_dir: str) -> git.Git:
    """Create a git command executor bound to the working directory."""
    return git.Git(working_dir)


def parse_remote_branch_name(line: str) -> Optional[tuple]:
    """
    Parse one line of ``git branch -r`` output.

    A leading ``*`` or ``+`` marker is dropped and anything after the first
    space (such as ``-> origin/master``) is ignored.

    Args:
        line: Raw listing line, e.g. ``"  origin/feature-x"``

    Returns:
        ``(remote, branch)`` tuple, or None if the line does not match
    """
    tokens = line.strip().split(' ')
    if tokens[0] in ('*', '+'):
        tokens = tokens[1:]
    # Multiple spaces between marker and name leave empty tokens behind
    tokens = [token for token in tokens if token]
    if not tokens:
        return None

    name = tokens[0]
    if '/' not in name:
        return None

    remote, branch = name.split('/', 1)
    if not remote or not branch:
        return None
    return remote, branch


def group_branches_by_remote(lines: list) -> dict:
    """Group parsed listing lines into ``{remote: [branch, ...]}``."""
    branches = {}
    for line in lines:
        if not line.strip():
            continue
        parsed = parse_remote_branch_name(line)
        if parsed is None:
            logger.warning(f"Ignoring unrecognised branch listing line: {line!r}")
            continue
        remote, branch = parsed
        branches.setdefault(remote, []).append(branch)
    return branches


def parse_commit_date(date_str: str) -> datetime:
    """
    Parse a strict ISO 8601 committer date into a datetime object.

    Args:
        date_str: Date string such as ``2026-10-15T10:30:00+02:00``

    Returns:
        datetime object with timezone info

    Raises:
        ValueError: If the date cannot be parsed or has no timezone
    """
    if date_str.endswith('Z'):
        date_str = date_str[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        raise ValueError(f"Unable to parse date: {date_str}")

    if parsed.tzinfo is None:
        raise ValueError(f"Date has no timezone: {date_str}")
    return parsed


def parse_last_commit_log(output: str) -> tuple:
    """
    Split ``date|name <email>`` log output on the first ``|``.

    Returns:
        ``(commit_date, author)`` tuple

    Raises:
        ValueError: If the output does not follow the expected format
    """
    lines = output.strip().splitlines()
    if not lines:
        raise ValueError("Empty commit log output")

    date_str, sep, author = lines[0].partition('|')
    if not sep or not author.strip():
        raise ValueError(f"Malformed commit log line: {lines[0]!r}")

    # Names in legacy encodings arrive as lone surrogates from the decoder
    author = author.strip().encode('utf-8', 'surrogateescape').decode('utf-8', 'replace')
    return parse_commit_date(date_str.strip()), author


def get_last_commit(g: git.Git, ref: str, timeout: float) -> tuple:
    """Return ``(commit_date, author)`` for the last commit on ``ref``."""
    output = g.log(
        ref, '-1', f'--format={LAST_COMMIT_FORMAT}', '--', kill_after_timeout=timeout
    )
    return parse_last_commit_log(output)


def days_between(current_date: datetime, last_commit_date: datetime) -> int:
    """Whole days between two dates, rounded toward negative infinity."""
    return int((current_date - last_commit_date).total_seconds() // SECONDS_PER_DAY)


def delete_remote_branch(g: git.Git, remote: str, branch: str, timeout: float) -> bool:
    """
    Delete a branch on the remote by pushing an empty ref to it.

    Returns:
        True if the push succeeded
    """
    try:
        g.push(remote, f':{branch}', kill_after_timeout=timeout)
        return True
    except git.GitCommandError as e:
        logger.error(f"Failed to delete branch '{remote}/{branch}': {e}")
        return False


def new_report() -> dict:
    """Create empty classification buckets keyed by committer."""
    return {
        'removed': {},
        'to_be_removed': {},
        'not_merged': {},
    }


def has_report_entries(report: dict) -> bool:
    return any(report.values())


def process_branches(
    g: git.Git,
    remote: str,
    branches: list,
    merged_branches: list,
    excluded_branches: set,
    dry_run: bool = False,
    current_date: Optional[datetime] = None,
    timeout: float = DEFAULT_GIT_TIMEOUT
) -> dict:
    """
    Classify the branches of one remote, deleting old merged ones.

    Args:
        g: Git command executor
        remote: Remote alias the branches belong to
        branches: All branch names on the remote
        merged_branches: Branch names merged into the target branch
        excluded_branches: Branch names that are never touched
        dry_run: If True, report deletions without pushing them
        current_date: Reference time (defaults to now)
        timeout: Seconds allowed for each git command

    Returns:
        Report dictionary with 'removed', 'to_be_removed' and 'not_merged'
        buckets, each mapping committer to a list of branch entries
    """
    if current_date is None:
        current_date = datetime.now().astimezone()

    report = new_report()
    merged = set(merged_branches)

    for branch in branches:
        if branch in excluded_branches:
            logger.debug(f"Skipping excluded branch: {branch}")
            continue

        branch_ref = f'{remote}/{branch}'
        try:
            last_commit_date, author = get_last_commit(g, branch_ref, timeout)
        except (git.GitCommandError, ValueError) as e:
            logger.warning(f"Could not read last commit of '{branch_ref}': {e}. Skipping.")
            continue

        age = days_between(current_date, last_commit_date)
        commit_date_display = last_commit_date.strftime(COMMIT_DATE_DISPLAY_FORMAT)

        if branch in merged:
            if age >= MERGED_KEPT_DAYS:
                logger.info(f"Removing branch '{branch_ref}'")
                if not dry_run and not delete_remote_branch(g, remote, branch, timeout):
                    continue
                report['removed'].setdefault(author, []).append({
                    'branch_name': branch_ref,
                    'last_commit_date': commit_date_display,
                })
            else:
                logger.info(f"Branch '{branch_ref}' is merged but not removed")
                days_left = MERGED_KEPT_DAYS - age
                removing_date = current_date + timedelta(days=days_left)
                report['to_be_removed'].setdefault(author, []).append({
                    'branch_name': branch_ref,
                    'last_commit_date': commit_date_display,
                    'days_left': days_left,
                    'removing_date': removing_date.strftime(REMOVAL_DATE_DISPLAY_FORMAT),
                })
        else:
            logger.info(f"Branch '{branch_ref}' is not merged")
            if age >= INACTIVE_NOTIFY_DAYS:
                report['not_merged'].setdefault(author, []).append({
                    'branch_name': branch_ref,
                    'last_commit_date': commit_date_display,
                })
            else:
                logger.debug(f"Branch '{branch_ref}' had a commit {age} day(s) ago")

    return report


def generate_email_content(report: dict) -> str:
    """Render the plain-text report from the template."""
    template = Template(REPORT_TEMPLATE, trim_blocks=True, keep_trailing_newline=True)
    return template.render(**report)


def send_email(
    smtp_config: dict,
    to_email: str,
    subject: str,
    text_content: str
) -> bool:
    """
    Send a plain-text email notification.

    Args:
        smtp_config: SMTP server configuration
        to_email: Recipient email address
        subject: Email subject
        text_content: Body of the email

    Returns:
        True if email was sent successfully
    """
    try:
        msg = MIMEText(text_content, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = smtp_config['from_email']
        msg['To'] = to_email

        with smtplib.SMTP(smtp_config['host'], smtp_config['port']) as server:
            if smtp_config.get('use_tls', False):
                server.starttls()
            if smtp_config.get('username') and smtp_config.get('password'):
                server.login(smtp_config['username'], smtp_config['password'])
            server.send_message(msg)
        logger.info(f"Email sent successfully to {to_email}")
        return True
    except (smtplib.SMTPException, OSError, UnicodeError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def _command_status(error: git.GitCommandError) -> int:
    if not isinstance(error.status, int) or error.status == 0:
        return 1
    # Killed by a signal, e.g. after kill_after_timeout
    if error.status < 0:
        return 128 + abs(error.status)
    return error.status


def clean_remote_branches(
    working_dir: str,
    remote: str = DEFAULT_REMOTE,
    target_branch: str = DEFAULT_BRANCH,
    mail_to: Optional[str] = None,
    dry_run: bool = False,
    config: Optional[dict] = None
) -> int:
    """
    Fetch, classify and clean the branches of one remote, then report.

    Args:
        working_dir: Path to the git working copy
        remote: Remote alias to clean
        target_branch: Branch that merged branches are checked against
        mail_to: Report recipient; no email is sent when empty
        dry_run: If True, don't actually delete branches
        config: Optional settings loaded by load_config

    Returns:
        Process exit status
    """
    config = config or {}
    timeout = config.get('git_timeout', DEFAULT_GIT_TIMEOUT)
    protected = config.get('protected_branches', [])

    try:
        os.chdir(working_dir)
    except OSError as e:
        logger.error(f"Cannot change into working directory {working_dir}: {e}")
        return 1

    g = create_git_client(os.getcwd())

    try:
        g.fetch(remote, '-p', kill_after_timeout=timeout)
        all_listing = g.branch('-r', kill_after_timeout=timeout).splitlines()
        merged_listing = g.branch(
            '-r', '--merged', f'{remote}/{target_branch}', kill_after_timeout=timeout
        ).splitlines()
    except git.GitCommandError as e:
        logger.error(f"Git command failed: {e}")
        return _command_status(e)

    all_branches = group_branches_by_remote(all_listing)
    merged_branches = group_branches_by_remote(merged_listing)

    excluded = {DEFAULT_BRANCH, target_branch, 'HEAD', *ALWAYS_PROTECTED_BRANCHES, *protected}

    if dry_run:
        logger.info("[DRY RUN] No branches will be deleted")

    report = process_branches(
        g,
        remote,
        all_branches.get(remote, []),
        merged_branches.get(remote, []),
        excluded,
        dry_run=dry_run,
        timeout=timeout
    )

    logger.info("=" * 50)
    logger.info("Remote Branch Cleanup Summary")
    logger.info("=" * 50)
    for title, key in (
        ('Removed', 'removed'),
        ('To be removed', 'to_be_removed'),
        ('Not merged and inactive', 'not_merged'),
    ):
        count = sum(len(entries) for entries in report[key].values())
        logger.info(f"{title}: {count}")

    if not has_report_entries(report):
        logger.info("Nothing to report")
    elif not mail_to:
        logger.info("No recipient configured, skipping email")
    else:
        send_email(
            get_smtp_config(config),
            mail_to,
            EMAIL_SUBJECT,
            generate_email_content(report)
        )

    return 0


class _HelpAction(argparse.Action):
    """Print the full help and exit with a failure status."""

    def __init__(self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS, help=None):
        super().__init__(option_strings=option_strings, dest=dest, default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help()
        parser.exit(1)


class JanitorArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = JanitorArgumentParser(
        description='Remove merged remote branches and report stale ones',
        add_help=False
    )
    parser.add_argument(
        '-d',
        dest='working_dir',
        default=os.path.realpath('.'),
        help='Working directory (default: current directory)'
    )
    parser.add_argument(
        '-r',
        dest='remote',
        default=DEFAULT_REMOTE,
        help=f'Remote alias (default: {DEFAULT_REMOTE})'
    )
    parser.add_argument(
        '-b',
        dest='branch',
        default=DEFAULT_BRANCH,
        help=f'Target branch (default: {DEFAULT_BRANCH})'
    )
    parser.add_argument(
        '-s',
        dest='mail_to',
        help='Send the report to this address, e.g. user@example.com'
    )
    parser.add_argument(
        '-c', '--config',
        help='Path to an optional YAML settings file'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Simulate the command without actually deleting branches'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '-h', '--help',
        action=_HelpAction,
        help='Show this help message and exit'
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the script."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = {}
    if args.config:
        try:
            config = load_config(args.config)
        except FileNotFoundError:
            logger.error(f"Configuration file not found: {args.config}")
            return 1
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in configuration file: {e}")
            return 1
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 1

    return clean_remote_branches(
        args.working_dir,
        remote=args.remote,
        target_branch=args.branch,
        mail_to=args.mail_to,
        dry_run=args.dry_run,
        config=config
    )


if __name__ == '__main__':
    sys.exit(main())
