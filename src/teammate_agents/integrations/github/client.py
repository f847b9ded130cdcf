"""GitHub-backed issue tracker."""

import logging
from datetime import datetime
from typing import List, Optional

from github import Auth, Github
from github.Issue import Issue as GithubIssue
from github.Repository import Repository

from ...core.config import GitHubConfig
from ..tracker import (
    BLOCKED_LABEL,
    EPIC_STATE_LABEL_PREFIX,
    NEEDS_HUMAN_LABEL,
    STATUS_LABEL_PREFIX,
    TrackerIssue,
    agent_label,
    status_label,
)

logger = logging.getLogger(__name__)


def to_tracker_issue(issue: GithubIssue) -> TrackerIssue:
    return TrackerIssue(
        number=issue.number,
        title=issue.title,
        body=issue.body or "",
        labels=[label.name for label in issue.labels],
        state=issue.state,
        assignees=[user.login for user in issue.assignees],
        updated_at=issue.updated_at,
    )


class GitHubIssueTracker:
    """``IssueTracker`` over the GitHub REST API via PyGithub."""

    def __init__(self, config: GitHubConfig, repo: Optional[Repository] = None):
        self.config = config
        if repo is None:
            self.gh = Github(auth=Auth.Token(config.token))
            repo = self.gh.get_repo(f"{config.owner}/{config.repo}")
        self.repo: Repository = repo

    def get_issue(self, number: int) -> TrackerIssue:
        return to_tracker_issue(self.repo.get_issue(number))

    def list_issues(self, label: Optional[str] = None, since: Optional[datetime] = None) -> List[TrackerIssue]:
        """Issues (not pull requests), optionally only those updated after ``since``."""
        kwargs = {"state": "all"}
        if label:
            kwargs["labels"] = [label]
        if since is not None:
            kwargs["since"] = since
        return [
            to_tracker_issue(issue)
            for issue in self.repo.get_issues(**kwargs)
            if issue.pull_request is None
        ]

    def create_issue(self, title: str, body: str = "", labels: Optional[List[str]] = None) -> int:
        issue = self.repo.create_issue(title=title, body=body, labels=labels or [])
        logger.info(f"Created GitHub issue #{issue.number}: {title}")
        return issue.number

    def mirror_claim(self, number: int, agent_id: str) -> None:
        issue = self.repo.get_issue(number)
        self._replace_prefixed(issue, STATUS_LABEL_PREFIX, status_label("in_progress"))
        issue.add_to_labels(agent_label(agent_id))
        issue.create_comment(f"Claimed by agent `{agent_id}`.")

    def release_claim(self, number: int, agent_id: str) -> None:
        issue = self.repo.get_issue(number)
        label = agent_label(agent_id)
        if label in {l.name for l in issue.labels}:
            issue.remove_from_labels(label)

    def set_status(self, number: int, status: str) -> None:
        issue = self.repo.get_issue(number)
        self._replace_prefixed(issue, STATUS_LABEL_PREFIX, status_label(status))

    def add_comment(self, number: int, body: str) -> None:
        self.repo.get_issue(number).create_comment(body)

    def mark_blocked(self, number: int, reason: str) -> None:
        issue = self.repo.get_issue(number)
        issue.add_to_labels(BLOCKED_LABEL)
        issue.create_comment(f"Blocked: {reason}")

    def mark_needs_human(self, number: int, report: str) -> None:
        issue = self.repo.get_issue(number)
        issue.add_to_labels(NEEDS_HUMAN_LABEL)
        issue.create_comment(report)

    def set_epic_state(self, number: int, state: str) -> None:
        issue = self.repo.get_issue(number)
        self._replace_prefixed(issue, EPIC_STATE_LABEL_PREFIX, f"{EPIC_STATE_LABEL_PREFIX}{state}")

    def _replace_prefixed(self, issue: GithubIssue, prefix: str, new_label: str) -> None:
        for label in issue.labels:
            if label.name.startswith(prefix) and label.name != new_label:
                issue.remove_from_labels(label.name)
        if new_label not in {l.name for l in issue.labels}:
            issue.add_to_labels(new_label)
