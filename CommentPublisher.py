"""CommentPublisher.py -- Keep a single summary comment on the pull request.

The comment is found again on later runs through an HTML marker embedded in
its body (and, optionally, the login that posted it), so repeated runs edit
it in place instead of piling up new ones.  When a run finds nothing new the
stale comment is deleted.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from github import Auth, Github, GithubException

from ActionEnvironment import ActionEnvironment
from CodeSecErrors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY = "code-analysis"


class CommentPublisher:
    """Post, update and remove the action's pull-request comment.

    Parameters
    ----------
    repo : github.Repository.Repository | None
        PyGithub repository handle; ``None`` disables commenting.
    pr_number : int | None
        Pull request the comment belongs to; ``None`` outside a PR.
    identity : str
        Distinguishes this action's comment from other bots' comments.
    author : str
        When set, only comments by this login are considered ours.
    """

    def __init__(
        self,
        repo: Any,
        pr_number: Optional[int],
        identity: str = DEFAULT_IDENTITY,
        author: str = "",
    ) -> None:
        self.repo = repo
        self.pr_number = pr_number
        self.identity = identity
        self.author = author

    @classmethod
    def from_environment(
        cls,
        env: ActionEnvironment,
        token: str,
        identity: str = DEFAULT_IDENTITY,
        author: str = "",
    ) -> "CommentPublisher":
        repo = None
        if token:
            client = Github(auth=Auth.Token(token), base_url=env.api_url)
            try:
                repo = client.get_repo(env.repository)
            except GithubException as exc:
                raise ApiError(f"open repository {env.repository}", exc.status, _detail(exc)) from exc
        return cls(repo, env.pull_request_number(), identity=identity, author=author)

    @property
    def marker(self) -> str:
        return f"<!-- codesec-action:{self.identity} -->"

    def _enabled(self) -> bool:
        if self.repo is None:
            logger.info("No token supplied; not touching pull-request comments")
            return False
        if self.pr_number is None:
            logger.info("Not running in a pull request; skipping comment")
            return False
        return True

    def _owned(self, comment: Any) -> bool:
        if self.marker not in (comment.body or ""):
            return False
        if self.author and getattr(comment.user, "login", "") != self.author:
            return False
        return True

    def _existing_comments(self, issue: Any) -> List[Any]:
        try:
            return [c for c in issue.get_comments() if self._owned(c)]
        except GithubException as exc:
            raise ApiError(f"list comments of #{self.pr_number}", exc.status, _detail(exc)) from exc

    def _issue(self) -> Any:
        try:
            return self.repo.get_issue(number=self.pr_number)
        except GithubException as exc:
            raise ApiError(f"load pull request #{self.pr_number}", exc.status, _detail(exc)) from exc

    def post_comment_if_in_pr(self, body: str) -> Optional[str]:
        """Create or update the summary comment; returns its URL."""
        if not self._enabled():
            return None
        issue = self._issue()
        full_body = f"{body}\n\n{self.marker}"
        existing = self._existing_comments(issue)
        try:
            if existing:
                comment = existing[0]
                comment.edit(full_body)
                logger.info("Updated existing comment %s", comment.html_url)
            else:
                comment = issue.create_comment(full_body)
                logger.info("Posted new comment %s", comment.html_url)
        except GithubException as exc:
            raise ApiError(f"write comment on #{self.pr_number}", exc.status, _detail(exc)) from exc
        return comment.html_url

    def resolve_existing_comment_if_found(self) -> int:
        """Delete a previously posted comment; returns how many were removed."""
        if not self._enabled():
            return 0
        existing = self._existing_comments(self._issue())
        if not existing:
            logger.info("No previous comment to resolve on #%s", self.pr_number)
            return 0
        for comment in existing:
            try:
                comment.delete()
            except GithubException as exc:
                raise ApiError(f"delete comment on #{self.pr_number}", exc.status, _detail(exc)) from exc
            logger.info("Removed stale comment %s", comment.html_url)
        return len(existing)


def _detail(exc: GithubException) -> str:
    data = exc.data
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return str(data or "")
