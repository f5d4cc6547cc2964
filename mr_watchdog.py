#!/usr/bin/env python3
"""
GitLab Merge Request Watchdog

This script watches the open merge requests of a single GitLab project and
runs a notification command for every merge request that has gone stale,
i.e. nobody created or updated it within the configured thresholds.

The project is looked up once at startup from its owner (a group or an
individual user) and its name. After that the watchdog polls on a fixed
interval, optionally only inside a daily active window, and hands each
stale merge request to a shell command with the author's username.
"""

import argparse
import functools
import logging
import shlex
import signal
import sqlite3
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Union

import gitlab
import requests
import yaml
from jinja2 import Environment, StrictUndefined, Template, TemplateSyntaxError, meta


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_REMINDER_MESSAGE = "Your merge request is still opened, please check it!"
DEFAULT_SHELL = "/bin/bash"
DEFAULT_MAX_WORKERS = 1  # Dispatches within one cycle run sequentially unless configured
MAX_WORKERS_LIMIT = 32
STOP_CHECK_SECONDS = 1.0  # Longest sleep between checks for a stop request
DEFAULT_REPEAT_AFTER_MINUTES = 0  # 0 = notify on every cycle
TIME_OF_DAY_FORMAT = "%H:%M"

# Variables a notification command template may reference
COMMAND_TEMPLATE_VARIABLES = frozenset({'username', 'message', 'title', 'iid', 'web_url'})

OWNER_KIND_CHOICES = ('group', 'user')


# =============================================================================
# Errors
# =============================================================================


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


class ResolutionError(Exception):
    """Raised when the watched project cannot be resolved to an id."""


class ProjectNotFoundError(ResolutionError):
    """Raised when the owner has no project with the configured name."""


class GitLabClientError(Exception):
    """Base class for classified GitLab API failures."""


class NotFoundError(GitLabClientError):
    """The requested GitLab resource does not exist (HTTP 404)."""


class AmbiguousOrMissingError(GitLabClientError):
    """A username lookup did not match exactly one account."""


class TransportError(GitLabClientError):
    """The GitLab server could not be reached."""


class ApiError(GitLabClientError):
    """GitLab answered with an unexpected status; carries the raw body."""

    def __init__(self, status: Optional[int], body: str):
        self.status = status
        self.body = body
        super().__init__(f"Unknown GitLab API error (status {status}): {body}")


# =============================================================================
# Data Model
# =============================================================================


@dataclass(frozen=True)
class GroupOwner:
    name: str


@dataclass(frozen=True)
class UserOwner:
    name: str


Owner = Union[GroupOwner, UserOwner]

OWNER_TYPES = {
    'group': GroupOwner,
    'user': UserOwner,
    'individual': UserOwner,
}


@dataclass(frozen=True)
class Project:
    id: int
    name: str


@dataclass(frozen=True)
class Author:
    name: str
    username: str


@dataclass(frozen=True)
class MergeRequest:
    """Snapshot of an open merge request taken during one poll."""

    iid: int
    title: str
    created_at: datetime
    updated_at: datetime
    work_in_progress: bool
    web_url: str
    author: Author

    @classmethod
    def from_gitlab(cls, mr) -> 'MergeRequest':
        """
        Build a snapshot from a python-gitlab merge request object.

        Raises:
            ValueError: If created_at or updated_at cannot be parsed
        """
        author = mr.author if isinstance(mr.author, dict) else {}
        # 'draft' replaced 'work_in_progress' in GitLab 14
        draft = getattr(mr, 'draft', None)
        if draft is None:
            draft = getattr(mr, 'work_in_progress', False)
        return cls(
            iid=mr.iid,
            title=mr.title,
            created_at=parse_gitlab_datetime(mr.created_at),
            updated_at=parse_gitlab_datetime(mr.updated_at),
            work_in_progress=bool(draft),
            web_url=getattr(mr, 'web_url', ''),
            author=Author(
                name=author.get('name', 'Unknown'),
                username=author.get('username', ''),
            ),
        )


@dataclass(frozen=True)
class Thresholds:
    created_minutes: float
    updated_minutes: float


@dataclass(frozen=True)
class ActiveWindow:
    start: dt_time
    end: dt_time


@dataclass(frozen=True)
class NotificationSettings:
    command: str
    message: str = DEFAULT_REMINDER_MESSAGE
    shell: str = DEFAULT_SHELL
    timeout_seconds: Optional[float] = None
    max_workers: int = DEFAULT_MAX_WORKERS
    repeat_after_minutes: float = DEFAULT_REPEAT_AFTER_MINUTES


@dataclass(frozen=True)
class WatchdogSettings:
    """Validated, immutable runtime settings built from the YAML config."""

    gitlab_url: str
    private_token: str = field(repr=False)
    owner: Owner
    project_name: str
    poll_interval_seconds: int
    thresholds: Thresholds
    notification: NotificationSettings
    active_window: Optional[ActiveWindow] = None
    ssl_verify: bool = True
    request_timeout: Optional[float] = None


# =============================================================================
# Configuration
# =============================================================================


def _require_section(config: dict, name: str) -> dict:
    section = config.get(name)
    if section is None:
        raise ConfigurationError(f"Missing '{name}' section in configuration")
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{name}' section must be a mapping")
    return section


def _require_string(section: dict, section_name: str, key: str) -> str:
    value = section.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"Missing required {section_name} config key: '{key}'")
    if not isinstance(value, str):
        raise ConfigurationError(f"{section_name} config key '{key}' must be a string")
    return value


def _require_number(value, name: str, minimum: float = 0, strict: bool = False) -> float:
    # bool is an int subclass; 'yes' in YAML must not pass as 1
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"'{name}' must be a number, got {value!r}")
    if value < minimum or (strict and value == minimum):
        comparison = 'greater than' if strict else 'at least'
        raise ConfigurationError(f"'{name}' must be {comparison} {minimum}, got {value}")
    return value


def parse_time_of_day(value: str) -> dt_time:
    """
    Parse an 'HH:MM' string into a time of day.

    Raises:
        ValueError: If the string is not in HH:MM format
    """
    # YAML 1.1 reads an unquoted 18:00 as the base-60 integer 1080;
    # H:MM always yields at least 60, a bare 9 is not a time
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 60:
            raise ValueError(
                f"{value!r} is not a time of day; write it as a quoted \"HH:MM\" string"
            )
        hours, minutes = divmod(value, 60)
        return dt_time(hours, minutes)
    return datetime.strptime(str(value).strip(), TIME_OF_DAY_FORMAT).time()


def _parse_active_window(config: dict) -> Optional[ActiveWindow]:
    window = config.get('active_window')
    if window is None:
        return None
    if not isinstance(window, dict):
        raise ConfigurationError("'active_window' section must be a mapping")

    start_raw = window.get('start')
    end_raw = window.get('end')
    if start_raw is None and end_raw is None:
        return None
    if start_raw is None or end_raw is None:
        raise ConfigurationError("'active_window' needs both 'start' and 'end'")

    try:
        start = parse_time_of_day(start_raw)
        end = parse_time_of_day(end_raw)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid active_window time (expected HH:MM): {e}"
        ) from e

    if end <= start:
        raise ConfigurationError(
            f"active_window end ({end_raw}) must be later than start ({start_raw}); "
            "windows spanning midnight are not supported"
        )
    return ActiveWindow(start=start, end=end)


def validate_command_template(template: str) -> None:
    """
    Check that a notification command template is usable.

    The template must parse as Jinja2, reference ``username`` and only use
    the known template variables.

    Raises:
        ConfigurationError: If the template is unusable
    """
    try:
        parsed = Environment().parse(template)
    except TemplateSyntaxError as e:
        raise ConfigurationError(f"Invalid notification command template: {e}") from e

    variables = meta.find_undeclared_variables(parsed)
    if 'username' not in variables:
        raise ConfigurationError(
            "Notification command must contain the '{{ username }}' placeholder"
        )
    unknown = variables - COMMAND_TEMPLATE_VARIABLES
    if unknown:
        raise ConfigurationError(
            f"Unknown placeholder(s) in notification command: {', '.join(sorted(unknown))}. "
            f"Available: {', '.join(sorted(COMMAND_TEMPLATE_VARIABLES))}"
        )


def get_validated_max_workers(notification: dict) -> int:
    """
    Read notification.max_workers, the number of parallel dispatches.

    Values outside 1-32 are clamped with a warning.

    Raises:
        ConfigurationError: If max_workers is not an integer
    """
    max_workers = notification.get('max_workers', DEFAULT_MAX_WORKERS)
    if isinstance(max_workers, bool) or not isinstance(max_workers, int):
        raise ConfigurationError(
            f"'notification.max_workers' must be an integer, got {max_workers!r}"
        )

    clamped = min(max(max_workers, 1), MAX_WORKERS_LIMIT)
    if clamped != max_workers:
        logger.warning(
            f"notification.max_workers={max_workers} is outside 1-{MAX_WORKERS_LIMIT}; "
            f"dispatching with {clamped} worker(s)"
        )
    return clamped


def build_settings(config: dict) -> WatchdogSettings:
    """
    Validate a configuration dictionary and build the runtime settings.

    Args:
        config: Configuration dictionary as loaded from YAML

    Returns:
        Immutable WatchdogSettings

    Raises:
        ConfigurationError: If any mandatory field is missing or invalid
    """
    if not config:
        raise ConfigurationError("Configuration is empty")
    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    gitlab_config = _require_section(config, 'gitlab')
    url = _require_string(gitlab_config, 'GitLab', 'url')
    private_token = _require_string(gitlab_config, 'GitLab', 'private_token')
    owner_kind = _require_string(gitlab_config, 'GitLab', 'owner_kind').strip().lower()
    owner_name = _require_string(gitlab_config, 'GitLab', 'owner')
    project_name = _require_string(gitlab_config, 'GitLab', 'project')

    if owner_kind not in OWNER_TYPES:
        raise ConfigurationError(
            f"Unsupported owner_kind: '{owner_kind}'. Must be 'group' or 'user'."
        )
    owner = OWNER_TYPES[owner_kind](owner_name)

    request_timeout = gitlab_config.get('timeout')
    if request_timeout is not None:
        request_timeout = _require_number(request_timeout, 'gitlab.timeout', strict=True)

    if 'poll_interval_seconds' not in config:
        raise ConfigurationError("Missing required config key: 'poll_interval_seconds'")
    interval = config['poll_interval_seconds']
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise ConfigurationError(
            f"'poll_interval_seconds' must be an integer, got {interval!r}"
        )
    _require_number(interval, 'poll_interval_seconds', strict=True)

    thresholds_config = _require_section(config, 'thresholds')
    for key in ('created_minutes', 'updated_minutes'):
        if key not in thresholds_config:
            raise ConfigurationError(f"Missing required thresholds config key: '{key}'")
    thresholds = Thresholds(
        created_minutes=float(_require_number(
            thresholds_config['created_minutes'], 'thresholds.created_minutes'
        )),
        updated_minutes=float(_require_number(
            thresholds_config['updated_minutes'], 'thresholds.updated_minutes'
        )),
    )

    notification_config = _require_section(config, 'notification')
    command = _require_string(notification_config, 'notification', 'command')
    validate_command_template(command)

    message = notification_config.get('message', DEFAULT_REMINDER_MESSAGE)
    if not isinstance(message, str):
        raise ConfigurationError("notification config key 'message' must be a string")

    timeout_seconds = notification_config.get('timeout_seconds')
    if timeout_seconds is not None:
        timeout_seconds = _require_number(
            timeout_seconds, 'notification.timeout_seconds', strict=True
        )

    repeat_after = notification_config.get('repeat_after_minutes')
    if repeat_after is None:
        repeat_after = DEFAULT_REPEAT_AFTER_MINUTES
    repeat_after = _require_number(repeat_after, 'notification.repeat_after_minutes')

    shell = DEFAULT_SHELL
    if notification_config.get('shell') is not None:
        shell = _require_string(notification_config, 'notification', 'shell')

    ssl_verify = gitlab_config.get('ssl_verify', True)
    if not isinstance(ssl_verify, bool):
        raise ConfigurationError(
            f"'gitlab.ssl_verify' must be true or false, got {ssl_verify!r}"
        )

    notification = NotificationSettings(
        command=command,
        message=message,
        shell=shell,
        timeout_seconds=timeout_seconds,
        max_workers=get_validated_max_workers(notification_config),
        repeat_after_minutes=float(repeat_after),
    )

    return WatchdogSettings(
        gitlab_url=url.rstrip('/'),
        private_token=private_token,
        owner=owner,
        project_name=project_name,
        poll_interval_seconds=interval,
        thresholds=thresholds,
        notification=notification,
        active_window=_parse_active_window(config),
        ssl_verify=ssl_verify,
        request_timeout=request_timeout,
    )


def load_config(config_path: str, owner_kind: Optional[str] = None) -> dict:
    """
    Load configuration from a YAML file.

    Validation happens in build_settings.

    Args:
        config_path: Path to the YAML configuration file
        owner_kind: Optional override for 'gitlab.owner_kind' (from the CLI)

    Returns:
        Configuration dictionary
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    if owner_kind and isinstance(config, dict) and isinstance(config.get('gitlab'), dict):
        config['gitlab']['owner_kind'] = owner_kind
    return config


# =============================================================================
# GitLab Client
# =============================================================================


def create_gitlab_client(settings: WatchdogSettings) -> gitlab.Gitlab:
    """Create a GitLab client that presents the static private token."""
    return gitlab.Gitlab(
        url=settings.gitlab_url,
        private_token=settings.private_token,
        ssl_verify=settings.ssl_verify,
        timeout=settings.request_timeout,
        retry_transient_errors=False,
    )


def _classify_gitlab_error(error: Exception, action: str) -> GitLabClientError:
    """Map a python-gitlab or requests exception onto the client error taxonomy."""
    if isinstance(error, gitlab.exceptions.GitlabError):
        status = getattr(error, 'response_code', None)
        if status == 404:
            return NotFoundError(f"{action}: not found")
        body = getattr(error, 'response_body', None)
        if isinstance(body, bytes):
            body = body.decode('utf-8', errors='replace')
        return ApiError(status, body or getattr(error, 'error_message', '') or str(error))
    return TransportError(f"{action}: {error}")


class GitLabClient:
    """
    Read-only queries against the GitLab API.

    Every failure is raised as a GitLabClientError subclass. The client never
    retries; callers decide what a failed call means.
    """

    def __init__(self, gl: gitlab.Gitlab):
        self.gl = gl

    def get_group_projects(self, owner_name: str) -> List[Project]:
        action = f"Listing projects of group '{owner_name}'"
        try:
            group = self.gl.groups.get(owner_name)
            return [
                Project(id=p.id, name=p.name)
                for p in group.projects.list(iterator=True, obey_rate_limit=False)
            ]
        except (gitlab.exceptions.GitlabError, requests.exceptions.RequestException) as e:
            raise _classify_gitlab_error(e, action) from e

    def get_user_project_id(self, owner_name: str, project_name: str) -> int:
        """
        Resolve a project owned by an individual user.

        The username must match exactly one account. The first project of
        that user whose name equals project_name (case-sensitive) wins.

        Raises:
            AmbiguousOrMissingError: If the username matches zero or several accounts
            NotFoundError: If the user has no project with that name
        """
        action = f"Resolving project '{project_name}' of user '{owner_name}'"
        try:
            users = self.gl.users.list(username=owner_name, obey_rate_limit=False)
            matches = [u for u in users if getattr(u, 'username', owner_name) == owner_name]
            if len(matches) != 1:
                raise AmbiguousOrMissingError(
                    f"Expected exactly one user named '{owner_name}', found {len(matches)}"
                )
            user = matches[0]
            logger.debug(f"Resolved user '{owner_name}' to id {user.id}")

            for candidate in user.projects.list(
                search=project_name, iterator=True, obey_rate_limit=False
            ):
                if candidate.name == project_name:
                    return candidate.id
        except (gitlab.exceptions.GitlabError, requests.exceptions.RequestException) as e:
            raise _classify_gitlab_error(e, action) from e

        raise NotFoundError(f"User '{owner_name}' has no project named '{project_name}'")

    def list_open_merge_requests(self, project_id: int) -> List[MergeRequest]:
        """
        Fetch every open merge request of a project.

        Pages are fetched lazily, so the list can be arbitrarily long. Merge
        requests with unparseable timestamps are logged and left out.

        Args:
            project_id: GitLab project ID

        Returns:
            List of MergeRequest snapshots
        """
        action = f"Listing open merge requests of project {project_id}"
        merge_requests = []
        try:
            project = self.gl.projects.get(project_id, lazy=True)
            for mr in project.mergerequests.list(
                state='opened', iterator=True, obey_rate_limit=False
            ):
                try:
                    merge_requests.append(MergeRequest.from_gitlab(mr))
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping MR !{getattr(mr, 'iid', '?')}: {e}")
        except (gitlab.exceptions.GitlabError, requests.exceptions.RequestException) as e:
            raise _classify_gitlab_error(e, action) from e
        return merge_requests


# =============================================================================
# Project Resolver
# =============================================================================


@functools.singledispatch
def resolve_project_id(owner, client: GitLabClient, project_name: str) -> int:
    """
    Resolve the id of the watched project from its owner and name.

    Args:
        owner: GroupOwner or UserOwner
        client: GitLab client
        project_name: Exact (case-sensitive) project name

    Returns:
        Numeric project id

    Raises:
        ProjectNotFoundError: If the owner has no project with that name
        ResolutionError: If the lookup itself failed
    """
    raise ResolutionError(f"Unsupported owner type: {type(owner).__name__}")


@resolve_project_id.register
def _(owner: GroupOwner, client: GitLabClient, project_name: str) -> int:
    try:
        projects = client.get_group_projects(owner.name)
    except NotFoundError as e:
        raise ResolutionError(f"Group '{owner.name}' not found") from e
    except GitLabClientError as e:
        raise ResolutionError(f"Could not list projects of group '{owner.name}': {e}") from e

    for project in projects:
        if project.name == project_name:
            return project.id

    raise ProjectNotFoundError(f"Group '{owner.name}' has no project named '{project_name}'")


@resolve_project_id.register
def _(owner: UserOwner, client: GitLabClient, project_name: str) -> int:
    try:
        return client.get_user_project_id(owner.name, project_name)
    except NotFoundError as e:
        raise ProjectNotFoundError(str(e)) from e
    except GitLabClientError as e:
        raise ResolutionError(f"Could not resolve user '{owner.name}': {e}") from e


# =============================================================================
# Staleness Evaluation
# =============================================================================


def parse_gitlab_datetime(date_str: str) -> datetime:
    """
    Parse a GitLab timestamp into a timezone-aware datetime.

    Handles the ISO 8601 variants GitLab returns ('Z' suffix, offsets,
    with or without microseconds).

    Raises:
        ValueError: If the date cannot be parsed
    """
    if date_str.endswith('Z'):
        date_str = date_str[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        formats = [
            '%Y-%m-%dT%H:%M:%S%z',
            '%Y-%m-%dT%H:%M:%S.%f%z',
            '%Y-%m-%d %H:%M:%S%z',
        ]
        for fmt in formats:
            try:
                parsed = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"Unable to parse date: {date_str}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def minutes_since(timestamp: datetime, now: datetime) -> float:
    """Wall-clock minutes elapsed from timestamp to now."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - timestamp).total_seconds() / 60


def is_stale(mr: MergeRequest, thresholds: Thresholds, now: Optional[datetime] = None) -> bool:
    """
    Decide whether a merge request is stale.

    A merge request is stale only when BOTH the time since creation and the
    time since the last update strictly exceed their thresholds. Draft/WIP
    merge requests are not exempt.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return (
        minutes_since(mr.created_at, now) > thresholds.created_minutes
        and minutes_since(mr.updated_at, now) > thresholds.updated_minutes
    )


def in_active_window(now: datetime, window: Optional[ActiveWindow]) -> bool:
    """
    Check whether now's time of day lies strictly inside the active window.

    Only hour and minute are compared. No window means always active.
    """
    if window is None:
        return True
    current = now.time().replace(second=0, microsecond=0)
    return window.start < current < window.end


# =============================================================================
# Notification Dispatch
# =============================================================================


@dataclass(frozen=True)
class DispatchOutcome:
    success: bool
    command: str
    output: str = ''
    error: Optional[str] = None


def render_command(template: str, **template_args) -> str:
    """
    Render a notification command template.

    Every value is shell-quoted before substitution, so a username or
    title can never break out of its argument.

    Raises:
        jinja2.exceptions.UndefinedError: If the template uses an unknown variable
    """
    quoted = {key: shlex.quote(str(value)) for key, value in template_args.items()}
    return Template(template, undefined=StrictUndefined).render(**quoted)


class ShellActionInvoker:
    """Runs the configured notification command in a child shell."""

    def __init__(
        self,
        template: str,
        shell: str = DEFAULT_SHELL,
        timeout: Optional[float] = None,
        dry_run: bool = False
    ):
        self.template = template
        self.shell = shell
        self.timeout = timeout
        self.dry_run = dry_run

    def invoke(self, template_args: dict) -> DispatchOutcome:
        """
        Render the command with template_args, run it and wait for it.

        Failures are returned as an unsuccessful DispatchOutcome, never raised.
        """
        try:
            command = render_command(self.template, **template_args)
        except Exception as e:
            return DispatchOutcome(
                success=False, command=self.template, error=f"Could not render command: {e}"
            )

        if self.dry_run:
            logger.info(f"[DRY RUN] Would run: {command}")
            return DispatchOutcome(success=True, command=command)

        logger.debug(f"Running notification command: {command}")
        try:
            result = subprocess.run(
                [self.shell, '-c', command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output = e.output or ''
            if isinstance(output, bytes):
                output = output.decode('utf-8', errors='replace')
            return DispatchOutcome(
                success=False,
                command=command,
                output=output,
                error=f"timed out after {self.timeout} seconds",
            )
        except (OSError, TypeError, ValueError) as e:
            # unusable shell path or argument, e.g. a NUL byte in the command
            return DispatchOutcome(success=False, command=command, error=str(e))

        if result.returncode != 0:
            return DispatchOutcome(
                success=False,
                command=command,
                output=result.stdout or '',
                error=f"exit status {result.returncode}",
            )
        return DispatchOutcome(success=True, command=command, output=result.stdout or '')


def notify(mr: MergeRequest, invoker, message: str = DEFAULT_REMINDER_MESSAGE) -> DispatchOutcome:
    """Run the notification action once for a single stale merge request."""
    return invoker.invoke({
        'username': mr.author.username,
        'message': message,
        'title': mr.title,
        'iid': mr.iid,
        'web_url': mr.web_url,
    })


class NotificationHistory:
    """
    In-memory record of when each merge request was last notified.

    Used to throttle repeat notifications. Nothing is persisted; a restart
    starts with an empty history.
    """

    def __init__(self, repeat_after_minutes: float):
        self.repeat_after = timedelta(minutes=repeat_after_minutes)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(':memory:', check_same_thread=False)
        with self._lock:
            self._conn.execute('''
                CREATE TABLE IF NOT EXISTS notification_history (
                    project_id INTEGER NOT NULL,
                    merge_request_iid INTEGER NOT NULL,
                    username TEXT NOT NULL,
                    last_notified_at TEXT NOT NULL,
                    UNIQUE(project_id, merge_request_iid, username)
                )
            ''')
            self._conn.commit()

    def get_last_notification_date(
        self,
        project_id: int,
        iid: int,
        username: str
    ) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute('''
                SELECT last_notified_at FROM notification_history
                WHERE project_id = ? AND merge_request_iid = ? AND username = ?
            ''', (project_id, iid, username)).fetchone()
        if row:
            return datetime.fromisoformat(row[0])
        return None

    def should_notify(self, project_id: int, iid: int, username: str, now: datetime) -> bool:
        last_notified = self.get_last_notification_date(project_id, iid, username)
        if last_notified is None:
            return True
        return now - last_notified >= self.repeat_after

    def record(self, project_id: int, iid: int, username: str, now: datetime) -> None:
        with self._lock:
            self._conn.execute('''
                INSERT INTO notification_history
                    (project_id, merge_request_iid, username, last_notified_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id, merge_request_iid, username)
                DO UPDATE SET last_notified_at = excluded.last_notified_at
            ''', (project_id, iid, username, now.isoformat()))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# =============================================================================
# Watchdog Loop
# =============================================================================


class WatchdogState(Enum):
    READY = 'ready'
    GATED = 'gated'
    CYCLING = 'cycling'
    STOPPED = 'stopped'


class Watchdog:
    """
    Polls one project on a fixed interval and notifies about stale MRs.

    The project must already be resolved; it is kept for the lifetime of
    the watchdog. Ticks never overlap: if a cycle takes longer than the
    poll interval, the ticks that fell inside it are skipped.
    """

    def __init__(
        self,
        client: GitLabClient,
        project: Project,
        settings: WatchdogSettings,
        invoker,
        history: Optional[NotificationHistory] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client
        self.project = project
        self.settings = settings
        self.invoker = invoker
        self.history = history
        self.state = WatchdogState.READY
        self.cycle_count = 0
        self._clock = clock
        self._sleep = sleep
        self._stop_requested = False

    def _set_state(self, state: WatchdogState) -> None:
        if state != self.state:
            logger.debug(f"Watchdog state: {self.state.value} -> {state.value}")
            self.state = state

    def stop(self) -> None:
        """
        Ask the loop to exit once the in-flight cycle (if any) is done.

        Only sets a flag, so it is safe to call from a signal handler.
        """
        self._stop_requested = True

    def _sleep_until(self, deadline: float) -> bool:
        """Sleep until deadline in short slices; True if a stop was requested."""
        while not self._stop_requested:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            self._sleep(min(remaining, STOP_CHECK_SECONDS))
        return True

    def tick(self, now: Optional[datetime] = None) -> dict:
        """Handle one timer tick: skip outside the active window, else run a cycle."""
        if now is None:
            now = datetime.now().astimezone()

        try:
            if not in_active_window(now, self.settings.active_window):
                self._set_state(WatchdogState.GATED)
                logger.info("Not in active window, skipping this tick.")
                summary = _empty_summary()
                summary['gated'] = True
                return summary
            return self.run_cycle(now)
        finally:
            if self.state != WatchdogState.STOPPED:
                self._set_state(WatchdogState.READY)

    def run_cycle(self, now: Optional[datetime] = None) -> dict:
        """
        Run one fetch-evaluate-dispatch pass.

        API failures are logged and end the cycle early; dispatch failures
        are logged and do not stop the remaining dispatches.

        Args:
            now: Evaluation time (defaults to the current time)

        Returns:
            Summary of the cycle
        """
        if now is None:
            now = datetime.now().astimezone()

        self._set_state(WatchdogState.CYCLING)
        self.cycle_count += 1
        logger.info(f"Cycle #{self.cycle_count} for project '{self.project.name}'")

        summary = _empty_summary()

        try:
            merge_requests = self.client.list_open_merge_requests(self.project.id)
        except GitLabClientError as e:
            logger.error(f"Error fetching merge requests for project {self.project.id}: {e}")
            summary['fetch_failed'] = True
            return summary

        summary['merge_requests_checked'] = len(merge_requests)

        to_notify = []
        for mr in merge_requests:
            if not is_stale(mr, self.settings.thresholds, now):
                logger.debug(f"MR !{mr.iid} is not stale")
                continue
            summary['stale_merge_requests'] += 1

            if self.history and not self.history.should_notify(
                self.project.id, mr.iid, mr.author.username, now
            ):
                logger.info(
                    f"Skipping MR !{mr.iid} by {mr.author.username} - "
                    f"already notified within {self.settings.notification.repeat_after_minutes:g} minutes"
                )
                summary['notifications_skipped'] += 1
                continue
            to_notify.append(mr)

        for mr, outcome in self._dispatch_all(to_notify):
            if outcome.success:
                summary['notifications_sent'] += 1
                summary['notified'].append({'iid': mr.iid, 'username': mr.author.username})
                logger.info(
                    f"Notified {mr.author.username} about stale MR !{mr.iid}: {mr.title}"
                )
                if outcome.output:
                    logger.info(f"Shell output: {outcome.output.strip()}")
                if self.history:
                    self.history.record(self.project.id, mr.iid, mr.author.username, now)
            else:
                summary['notifications_failed'] += 1
                logger.error(
                    f"Failed to notify {mr.author.username} about MR !{mr.iid}: {outcome.error}"
                )
                if outcome.output:
                    logger.error(f"Shell output: {outcome.output.strip()}")

        logger.info(
            f"Cycle #{self.cycle_count} done: {summary['merge_requests_checked']} open, "
            f"{summary['stale_merge_requests']} stale, {summary['notifications_sent']} notified, "
            f"{summary['notifications_failed']} failed, {summary['notifications_skipped']} skipped"
        )
        return summary

    def _dispatch_all(self, merge_requests: List[MergeRequest]) -> list:
        """Dispatch one notification per merge request and pair each with its outcome."""
        message = self.settings.notification.message
        max_workers = self.settings.notification.max_workers

        if max_workers <= 1 or len(merge_requests) <= 1:
            return [(mr, self._safe_notify(mr, message)) for mr in merge_requests]

        results = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_mr = {
                executor.submit(self._safe_notify, mr, message): mr
                for mr in merge_requests
            }
            for future in as_completed(future_to_mr):
                results.append((future_to_mr[future], future.result()))
        return results

    def _safe_notify(self, mr: MergeRequest, message: str) -> DispatchOutcome:
        try:
            return notify(mr, self.invoker, message)
        except Exception as e:
            logger.exception(f"Unexpected error notifying about MR !{mr.iid}")
            return DispatchOutcome(success=False, command='', error=str(e))

    def run_forever(self) -> None:
        """
        Tick every poll interval until stop() is called.

        The first tick fires one interval after start. Unexpected errors in a
        tick are logged and the loop carries on.
        """
        interval = self.settings.poll_interval_seconds
        next_tick = self._clock() + interval
        logger.info(f"Polling every {interval} seconds")

        while not self._sleep_until(next_tick):
            try:
                self.tick()
            except Exception:
                logger.exception("Unexpected error during watchdog cycle")
                self._set_state(WatchdogState.READY)

            next_tick += interval
            current = self._clock()
            if current >= next_tick:
                skipped = int((current - next_tick) // interval) + 1
                next_tick += skipped * interval
                logger.warning(
                    f"Cycle took longer than the poll interval; skipped {skipped} tick(s)"
                )

        self._set_state(WatchdogState.STOPPED)
        logger.info("Watchdog stopped")


def _empty_summary() -> dict:
    return {
        'merge_requests_checked': 0,
        'stale_merge_requests': 0,
        'notifications_sent': 0,
        'notifications_failed': 0,
        'notifications_skipped': 0,
        'notified': [],
        'gated': False,
        'fetch_failed': False,
    }


# =============================================================================
# Command Line
# =============================================================================


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Watch the open merge requests of a GitLab project and '
                    'run a notification command for stale ones'
    )
    parser.add_argument(
        '-c', '--config',
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to configuration file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--owner-kind',
        choices=OWNER_KIND_CHOICES,
        help="Override 'gitlab.owner_kind': whether the project belongs to a group or a user"
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single check and exit instead of polling forever'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log notification commands instead of running them'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    return parser


def _fail(parser: argparse.ArgumentParser, message: str) -> int:
    logger.error(message)
    parser.print_usage(sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> Optional[int]:
    """Main entry point for the script."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = build_settings(load_config(args.config, owner_kind=args.owner_kind))
    except FileNotFoundError:
        return _fail(parser, f"Configuration file not found: {args.config}")
    except yaml.YAMLError as e:
        return _fail(parser, f"Invalid YAML in configuration file: {e}")
    except ConfigurationError as e:
        return _fail(parser, f"Configuration error: {e}")

    client = GitLabClient(create_gitlab_client(settings))

    try:
        project_id = resolve_project_id(settings.owner, client, settings.project_name)
    except ResolutionError as e:
        return _fail(parser, f"Could not resolve project '{settings.project_name}': {e}")

    project = Project(id=project_id, name=settings.project_name)
    logger.info(f"Watching project '{project.name}' (id {project.id}) on {settings.gitlab_url}")

    notification = settings.notification
    history = None
    if notification.repeat_after_minutes > 0:
        history = NotificationHistory(notification.repeat_after_minutes)

    invoker = ShellActionInvoker(
        notification.command,
        shell=notification.shell,
        timeout=notification.timeout_seconds,
        dry_run=args.dry_run,
    )
    watchdog = Watchdog(client, project, settings, invoker, history=history)

    received_signals = []

    def handle_signal(signum, frame):
        # no logging here: the handler may interrupt a thread holding a log lock
        received_signals.append(signum)
        watchdog.stop()

    try:
        if args.once:
            watchdog.tick()
            return 0

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)
        watchdog.run_forever()
    finally:
        if history:
            history.close()

    if received_signals:
        logger.info(f"Received signal {received_signals[0]}, exiting")
        return 128 + received_signals[0]
    return 0


if __name__ == '__main__':
    sys.exit(main())
