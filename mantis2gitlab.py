#!/usr/bin/env python
"""
Mantis2GitLab Importer
----------------------

This tool imports issues from a Mantis CSV export into a GitLab project. Mantis issue numbers are
preserved: every Mantis issue #N becomes GitLab issue #N, and numbers missing from the export are
filled with closed "Skipped Mantis Issue" placeholders. Issues that already exist in GitLab are
updated in place, so an interrupted import can simply be run again (optionally with --from to start
at a later issue). The GitLab project itself is the only checkpoint; nothing is stored locally.

Usage:
    python mantis2gitlab.py \
      --input issues.csv \
      --config config.json \
      --gitlab-url https://gitlab.example.com \
      --project mycorp/myproj \
      --token YOUR_ADMIN_PRIVATE_TOKEN \
      --sudo bob \
      [--from 123]
"""

import argparse
import csv
import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import gitlab
import requests
from gitlab.exceptions import GitlabError, GitlabGetError

# ----------------------------
# Logging configuration
# ----------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s"
)
logger = logging.getLogger(__name__)

NOTES_DELIMITER = "$$$$"
PER_PAGE = 100
SKIPPED_TITLE = "Skipped Mantis Issue"


# ----------------------------
# Errors
# ----------------------------
class MigrationError(Exception):
    """Base class for every error the importer reports to the operator."""


class ConfigError(MigrationError):
    pass


class InputError(MigrationError):
    pass


class UserValidationError(MigrationError):
    """Raised when Mantis usernames have no GitLab mapping and no fallback user exists."""

    def __init__(self, unmapped):
        self.unmapped = list(unmapped)
        super().__init__(f"User Validation Failed: {', '.join(self.unmapped)}")


class NumberingError(MigrationError):
    """GitLab handed out an issue number that breaks the Mantis to GitLab numbering."""


class RemoteStoreError(MigrationError):
    pass


class ProjectNotFound(RemoteStoreError):
    pass


class MemberListFailed(RemoteStoreError):
    pass


class IssueListFailed(RemoteStoreError):
    pass


class IssueCreateFailed(RemoteStoreError):
    pass


class IssueUpdateFailed(RemoteStoreError):
    pass


class IssueCloseFailed(RemoteStoreError):
    pass


# ----------------------------
# Data model
# ----------------------------
@dataclass(frozen=True)
class MantisIssue:
    """One row of the Mantis CSV export."""
    id: int
    summary: str = ""
    description: str = ""
    reporter: str = ""
    assigned_to: str = ""
    status: str = ""
    created: str = ""
    updated: str = ""
    category: str = ""
    priority: str = ""
    severity: str = ""
    info: str = ""
    tags: Tuple[str, ...] = ()
    notes: Tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row):
        """
        Build an issue from a csv.DictReader row.

        :param row: Mapping of CSV header to cell value.
        :return: MantisIssue
        :raises InputError: If the Id column is missing or not a number.
        """
        raw_id = (row.get("Id") or "").strip()
        try:
            issue_id = int(raw_id)
        except ValueError:
            raise InputError(f"Invalid Mantis issue id: {raw_id!r}")

        def value(column):
            return row.get(column) or ""

        tags = value("Tags")
        notes = value("Notes")
        return cls(
            id=issue_id,
            summary=value("Summary"),
            description=value("Description"),
            reporter=value("Reporter"),
            assigned_to=value("Assigned To"),
            status=value("Status"),
            created=value("Created"),
            updated=value("Updated"),
            category=value("Category"),
            priority=value("Priority"),
            severity=value("Severity"),
            info=value("Info"),
            tags=tuple(tag.strip() for tag in tags.split(",") if tag.strip()),
            notes=tuple(notes.split(NOTES_DELIMITER)) if notes else (),
        )


@dataclass
class GitLabIssue:
    """The parts of a GitLab issue the importer reads or writes."""
    id: int
    iid: int
    project_id: int
    title: str = ""
    description: str = ""
    assignee_id: Optional[int] = None
    labels: List[str] = field(default_factory=list)
    state: str = "opened"

    @classmethod
    def from_api(cls, issue):
        """Convert a python-gitlab ProjectIssue."""
        assignee = getattr(issue, "assignee", None) or {}
        return cls(
            id=issue.id,
            iid=issue.iid,
            project_id=issue.project_id,
            title=getattr(issue, "title", "") or "",
            description=getattr(issue, "description", "") or "",
            assignee_id=assignee.get("id"),
            labels=list(getattr(issue, "labels", None) or []),
            state=getattr(issue, "state", "opened"),
        )


@dataclass
class UserRecord:
    mantis_username: str
    name: str = ""
    gl_username: Optional[str] = None
    gl_id: Optional[int] = None


@dataclass
class ImportConfig:
    """Everything read from config.json, passed explicitly to each component."""
    users: Dict[str, UserRecord] = field(default_factory=dict)
    category_labels: Dict[str, str] = field(default_factory=dict)
    priority_labels: Dict[str, str] = field(default_factory=dict)
    severity_labels: Dict[str, str] = field(default_factory=dict)
    closed_statuses: frozenset = frozenset()
    mantis_url: Optional[str] = None


@dataclass
class ImportSummary:
    updated: int = 0
    inserted: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    close_failed: int = 0


# ----------------------------
# Configuration and input
# ----------------------------
def load_config(config_file, sudo):
    """
    Read and parse the JSON configuration file.

    A fallback user keyed by "" (named "Unknown", mapped to the sudo user) is added unless
    the file defines its own "" entry. Mapping "" to null disables the fallback.

    :param config_file: Path to config.json.
    :param sudo: GitLab username performing the import.
    :return: ImportConfig
    """
    logger.info("Reading configuration...")
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config file: {config_file}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a JSON object: {config_file}")
    return parse_config(data, sudo)


def parse_config(data, sudo):
    users = {"": UserRecord("", name="Unknown", gl_username=sudo)}
    for username, entry in (data.get("users") or {}).items():
        if entry is None:
            users.pop(username, None)
            continue
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid user mapping for Mantis user: {username}")
        users[username] = UserRecord(
            username,
            name=entry.get("name") or "",
            gl_username=entry.get("gl_username"),
        )

    closed = data.get("closed_statuses") or {}
    if isinstance(closed, dict):
        closed_statuses = frozenset(status for status, flag in closed.items() if flag)
    else:
        closed_statuses = frozenset(closed)

    mantis_url = data.get("mantisUrl") or None
    return ImportConfig(
        users=users,
        category_labels=data.get("category_labels") or {},
        priority_labels=data.get("priority_labels") or {},
        severity_labels=data.get("severity_labels") or {},
        closed_statuses=closed_statuses,
        mantis_url=mantis_url.rstrip("/") if mantis_url else None,
    )


def select_issues(issues, from_issue_id=0):
    """Drop issues numbered below from_issue_id and sort the rest by id."""
    if from_issue_id:
        issues = [issue for issue in issues if issue.id >= from_issue_id]
    return sorted(issues, key=lambda issue: issue.id)


def read_mantis_issues(input_file, from_issue_id=0):
    """
    Read and parse the Mantis CSV export.

    :param input_file: Path to the CSV file.
    :param from_issue_id: First Mantis issue number to import (0 imports everything).
    :return: List of MantisIssue sorted by id.
    """
    logger.info("Reading Mantis export file...")
    try:
        with open(input_file, "r", encoding="utf-8-sig", newline="") as f:
            rows = list(csv.DictReader(f))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise InputError(f"Cannot read input file: {input_file} - {e}") from e
    issues = [MantisIssue.from_row(row) for row in rows]
    return select_issues(issues, from_issue_id)


# ----------------------------
# User directory
# ----------------------------
class UserDirectory:
    """
    Maps Mantis usernames to GitLab users.
    """
    def __init__(self, users):
        self.users = users

    def resolve(self, username):
        """
        Look up a Mantis username, falling back to the "" user.

        :param username: Mantis username (may be empty).
        :return: UserRecord or None if neither the user nor a fallback is configured.
        """
        return (username and self.users.get(username)) or self.users.get("") or None

    def map_gitlab_ids(self, members):
        """
        Set gl_id on every user whose gl_username is a member of the GitLab project.

        :param members: Project members as returned by the GitLab API.
        """
        ids = {member.username: member.id for member in members}
        for user in self.users.values():
            user.gl_id = ids.get(user.gl_username)
            if user.gl_id is None:
                logger.warning(
                    f"GitLab user '{user.gl_username}' for Mantis user "
                    f"'{user.mantis_username or '<unknown>'}' is not a project member; "
                    f"issues will be left unassigned."
                )

    def validate_all(self, issues):
        """
        Collect every assignee and reporter that cannot be resolved.

        :param issues: MantisIssue records.
        :return: Unmapped usernames, without duplicates, in first-seen order.
        """
        missing = []
        for username in [issue.assigned_to for issue in issues] + [issue.reporter for issue in issues]:
            if self.resolve(username) is None and username not in missing:
                missing.append(username)
        return missing


# ----------------------------
# Field mapping
# ----------------------------
def mantis_reference(issue_id, config):
    """Markdown reference to a Mantis issue, linked when mantisUrl is configured."""
    if config.mantis_url:
        return f"[Mantis Issue {issue_id}]({config.mantis_url}/view.php?id={issue_id})"
    return f"Mantis Issue {issue_id}"


def build_description(issue, config) -> str:
    """
    Compose the GitLab description: an italic attribute line, the Mantis description,
    the additional information and the notes.

    :param issue: MantisIssue.
    :param config: ImportConfig.
    :return: Markdown description.
    """
    attributes = [mantis_reference(issue.id, config)]
    if issue.reporter:
        attributes.append(f"Reported By: {issue.reporter}")
    if issue.assigned_to:
        attributes.append(f"Assigned To: {issue.assigned_to}")
    if issue.created:
        attributes.append(f"Created: {issue.created}")
    if issue.updated and issue.updated != issue.created:
        attributes.append(f"Updated: {issue.updated}")

    description = "_" + ", ".join(attributes) + "_\n\n" + issue.description
    if issue.info:
        description += "\n\n" + issue.info
    if issue.notes:
        description += "\n\n" + "\n\n".join(issue.notes)
    return description


def build_labels(issue, config) -> str:
    labels = list(issue.tags)
    for table, key in ((config.category_labels, issue.category),
                       (config.priority_labels, issue.priority),
                       (config.severity_labels, issue.severity)):
        label = table.get(key)
        if label:
            labels.append(label)
    return ",".join(labels)


def is_closed(issue, config) -> bool:
    return issue.status in config.closed_statuses


def build_skipped_fields(iid, config):
    """Title and description of the placeholder that holds issue number iid."""
    return {
        "title": f"{SKIPPED_TITLE} {iid}",
        "description": f"_Skipped {mantis_reference(iid, config)}_",
    }


def issue_fields(issue, config, directory):
    """
    Build the create/update payload for a Mantis issue.

    :param issue: MantisIssue.
    :param config: ImportConfig.
    :param directory: UserDirectory used to resolve the assignee.
    :return: Dictionary of GitLab issue attributes.
    """
    fields = {
        "title": issue.summary,
        "description": build_description(issue, config),
        "labels": build_labels(issue, config),
    }
    assignee = directory.resolve(issue.assigned_to)
    if assignee is not None and assignee.gl_id is not None:
        fields["assignee_id"] = assignee.gl_id
    return fields


# ----------------------------
# GitLab issue store
# ----------------------------
class GitLabIssueStore:
    """
    Thin wrapper around python-gitlab. Every request is sent with the sudo user, and
    every failure is re-raised as a RemoteStoreError subclass.
    """
    def __init__(self, gitlab_url, private_token, sudo):
        """
        :param gitlab_url: URL of the GitLab instance.
        :param private_token: An admin user's private token.
        :param sudo: GitLab username the requests are performed as.
        """
        logger.info("Connecting to GitLab...")
        self.gitlab = gitlab.Gitlab(gitlab_url, private_token=private_token)
        self.gitlab_url = gitlab_url.rstrip('/')
        self.sudo = sudo

    def _project(self, project_id):
        return self.gitlab.projects.get(project_id, lazy=True)

    def find_project(self, path_with_namespace):
        """
        Fetch a project by its full path.

        :param path_with_namespace: e.g. "mycorp/myproj".
        :return: python-gitlab Project.
        """
        logger.info("Fetching project from GitLab...")
        try:
            return self.gitlab.projects.get(path_with_namespace, sudo=self.sudo)
        except GitlabGetError as e:
            if e.response_code == 404:
                raise ProjectNotFound(f"Cannot find GitLab project: {path_with_namespace}") from e
            raise RemoteStoreError(f"Cannot get project from GitLab: {path_with_namespace} ({e})") from e
        except (GitlabError, requests.exceptions.RequestException) as e:
            raise RemoteStoreError(f"Cannot get project from GitLab: {path_with_namespace} ({e})") from e

    def list_project_members(self, project_id):
        logger.info("Fetching project members from GitLab...")
        try:
            return self._project(project_id).members_all.list(get_all=True, sudo=self.sudo)
        except (GitlabError, requests.exceptions.RequestException) as e:
            raise MemberListFailed(f"Cannot get list of users from GitLab project {project_id} ({e})") from e

    def list_all_issues(self, project_id):
        """
        Fetch every issue of the project, one page at a time, until a short page is returned.

        :param project_id: GitLab project ID.
        :return: Dictionary of GitLabIssue keyed by iid.
        """
        manager = self._project(project_id).issues
        issues = []
        page = 1
        while True:
            first = (page - 1) * PER_PAGE
            logger.info(f"Fetching project issues from GitLab [{first + 1}-{first + PER_PAGE}]...")
            try:
                batch = manager.list(page=page, per_page=PER_PAGE, order_by="id", sort="asc",
                                     state="all", sudo=self.sudo)
            except (GitlabError, requests.exceptions.RequestException) as e:
                raise IssueListFailed(
                    f"Cannot get list of issues from GitLab project {project_id} page={page} ({e})"
                ) from e
            issues.extend(GitLabIssue.from_api(issue) for issue in batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        logger.info(f"Fetched {len(issues)} GitLab issues.")
        return {issue.iid: issue for issue in issues}

    def create_issue(self, project_id, fields):
        try:
            issue = self._project(project_id).issues.create(fields, sudo=self.sudo)
        except (GitlabError, requests.exceptions.RequestException) as e:
            raise IssueCreateFailed(f"Failed to insert issue into GitLab project {project_id} ({e})") from e
        return GitLabIssue.from_api(issue)

    def update_issue(self, project_id, iid, fields):
        """
        Update an issue. API v4 addresses project issues by iid.

        :param project_id: GitLab project ID.
        :param iid: Issue number within the project.
        :param fields: Attributes to change, optionally with a state_event of "close" or "reopen".
        """
        try:
            self._project(project_id).issues.update(iid, fields, sudo=self.sudo)
        except (GitlabError, requests.exceptions.RequestException) as e:
            raise IssueUpdateFailed(
                f"Failed to update issue #{iid} in GitLab project {project_id} ({e})"
            ) from e

    def close_issue(self, issue, extra_fields=None):
        """
        Close an issue, optionally changing other attributes in the same request.

        :param issue: GitLabIssue to close.
        :param extra_fields: Attributes sent along with the close event.
        """
        fields = {"state_event": "close"}
        fields.update(extra_fields or {})
        try:
            self.update_issue(issue.project_id, issue.iid, fields)
        except IssueUpdateFailed as e:
            raise IssueCloseFailed(f"Failed to close issue #{issue.iid} in GitLab ({e})") from e
        issue.state = "closed"


# ----------------------------
# Reconciliation
# ----------------------------
class IssueReconciler:
    """
    Brings the GitLab project in line with the Mantis issues, one issue at a time.

    The snapshot of GitLab issues (keyed by iid) is loaded once and kept current as issues are
    inserted. GitLab numbers new issues sequentially, so requests must never run concurrently.
    """
    def __init__(self, store, project_id, config, directory, snapshot):
        self.store = store
        self.project_id = project_id
        self.config = config
        self.directory = directory
        self.snapshot = snapshot
        self.summary = ImportSummary()

    def import_issues(self, issues):
        """
        Import the issues in ascending id order.

        :param issues: MantisIssue records.
        :return: ImportSummary
        :raises IssueUpdateFailed: An existing issue could not be updated; the run stops.
        """
        for issue in sorted(issues, key=lambda issue: issue.id):
            self.import_issue(issue)
        return self.summary

    def import_issue(self, issue):
        logger.info(f"Importing: #{issue.id} - {issue.summary} ...")
        fields = issue_fields(issue, self.config, self.directory)
        existing = self.snapshot.get(issue.id)
        if existing is not None:
            self.update_issue(issue, existing, fields)
            return
        try:
            self.insert_skipped_issues(issue.id - 1)
            self.insert_issue(issue, fields)
        except (IssueCreateFailed, NumberingError) as e:
            self.summary.failed += 1
            logger.error(f"{issue.id}: Failed to insert. {e}")

    def update_issue(self, issue, existing, fields):
        closed = is_closed(issue, self.config)
        data = dict(fields, state_event="close" if closed else "reopen")
        self.store.update_issue(self.project_id, existing.iid, data)
        existing.state = "closed" if closed else "opened"
        self.summary.updated += 1
        logger.info(f"#{issue.id}: Updated successfully.")

    def insert_skipped_issues(self, boundary):
        """
        Create closed placeholders until GitLab has an issue numbered boundary.

        :param boundary: Highest issue number that must exist before the next insert.
        :raises NumberingError: If GitLab is already past boundary, so the gap cannot be filled.
        """
        while boundary >= 1 and boundary not in self.snapshot:
            highest = max(self.snapshot, default=0)
            if highest > boundary:
                raise NumberingError(
                    f"GitLab issue #{boundary} is missing but #{highest} already exists"
                )
            logger.warning(f"Skipping Missing Mantis Issue (<= #{boundary}) ...")
            placeholder = self.store.create_issue(self.project_id, {"title": SKIPPED_TITLE})
            self.snapshot[placeholder.iid] = placeholder
            self.summary.skipped += 1
            self.close_inserted(placeholder.iid, placeholder,
                                build_skipped_fields(placeholder.iid, self.config))
            if placeholder.iid > boundary:
                raise NumberingError(
                    f"GitLab assigned #{placeholder.iid} while filling the gap up to #{boundary}"
                )

    def insert_issue(self, issue, fields):
        created = self.store.create_issue(self.project_id, fields)
        self.snapshot[created.iid] = created
        self.summary.inserted += 1
        if created.iid != issue.id:
            logger.warning(f"{issue.id}: GitLab assigned #{created.iid} instead of #{issue.id}.")
        if is_closed(issue, self.config):
            self.close_inserted(issue.id, created)
        else:
            logger.info(f"{issue.id}: Inserted successfully. #{created.iid}")

    def close_inserted(self, issue_id, created, extra_fields=None):
        try:
            self.store.close_issue(created, extra_fields)
        except IssueCloseFailed as e:
            self.summary.close_failed += 1
            logger.warning(f"{issue_id}: Inserted successfully but failed to close. #{created.iid} ({e})")
            return
        self.summary.closed += 1
        logger.info(f"{issue_id}: Inserted and closed successfully. #{created.iid}")


# ----------------------------
# Mantis to GitLab importer
# ----------------------------
class MantisToGitLabImporter:
    """
    Runs an import: resolves the project and its members, validates users,
    loads the existing GitLab issues and reconciles them with the Mantis issues.
    """
    def __init__(self, config, store, project_path):
        """
        :param config: ImportConfig.
        :param store: GitLabIssueStore.
        :param project_path: GitLab project name including namespace.
        """
        self.config = config
        self.store = store
        self.project_path = project_path

    def run(self, issues, from_issue_id=0):
        """
        :param issues: MantisIssue records, already filtered by from_issue_id.
        :param from_issue_id: First issue number, for progress messages only.
        :return: ImportSummary
        """
        project = self.store.find_project(self.project_path)
        members = self.store.list_project_members(project.id)
        directory = UserDirectory(self.config.users)
        directory.map_gitlab_ids(members)

        logger.info("Validating Mantis Users...")
        unmapped = directory.validate_all(issues)
        if unmapped:
            for username in unmapped:
                logger.error(f"Cannot map Mantis user with username: {username}")
            raise UserValidationError(unmapped)

        snapshot = self.store.list_all_issues(project.id)
        logger.info(f"Importing Mantis issues into GitLab from #{from_issue_id} ...")
        reconciler = IssueReconciler(self.store, project.id, self.config, directory, snapshot)
        return reconciler.import_issues(issues)


def build_parser():
    parser = argparse.ArgumentParser(
        description="Import issues from a Mantis CSV export into a GitLab project, preserving issue numbers."
    )
    parser.add_argument("-i", "--input", required=True,
                        help="CSV file exported from Mantis (Example: issues.csv)")
    parser.add_argument("-c", "--config", required=True,
                        help="Configuration file (Example: config.json)")
    parser.add_argument("-g", "--gitlab-url", required=True,
                        help="GitLab URL hostname (Example: https://gitlab.com)")
    parser.add_argument("-p", "--project", required=True,
                        help="GitLab project name including namespace (Example: mycorp/myproj)")
    parser.add_argument("-t", "--token", required=True,
                        help="An admin user's private token (Example: a2r33oczFyQzq53t23Vj)")
    parser.add_argument("-s", "--sudo", required=True,
                        help="The username performing the import (Example: bob)")
    parser.add_argument("-f", "--from", dest="from_issue_id", type=int, default=0,
                        help="The first issue # to import (Example: 123)")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, args.sudo)
        issues = read_mantis_issues(args.input, args.from_issue_id)
        store = GitLabIssueStore(args.gitlab_url, args.token, args.sudo)
        importer = MantisToGitLabImporter(config, store, args.project)
        summary = importer.run(issues, args.from_issue_id)
    except MigrationError as e:
        logger.error(str(e))
        return 1

    logger.info(
        f"Updated {summary.updated}, inserted {summary.inserted}, "
        f"skipped {summary.skipped}, closed {summary.closed}."
    )
    if summary.failed or summary.close_failed:
        logger.warning(
            f"{summary.failed} issue(s) failed to insert and {summary.close_failed} "
            f"failed to close; see the messages above."
        )
    logger.info("Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
