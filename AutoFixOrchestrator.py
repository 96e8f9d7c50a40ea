"""AutoFixOrchestrator.py -- Turn fix suggestions into branches and pull requests.

For every fix id in an LW-JSON document the scanner's ``patch`` mode rewrites
the working tree; the touched files are committed on a dedicated branch,
force-pushed, and a pull request against the triggering branch is opened or
refreshed.  Fix branches are regenerated from scratch on every run, which is
why the push is forced.

Per fix id the orchestrator walks::

    Idle -> Patched -> BranchCreated|BranchUpdated -> Committed
         -> PRCreated|PRUpdated -> RestoredOriginalBranch

A failure aborts that fix id only; the original branch is checked out again
on every exit path.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import git
from git import Repo
from github import GithubException

from CodeSecCli import CodeSecCli
from CodeSecErrors import ApiError, CodeSecError, GitOperationError, MalformedReportError
from PatchSummary import PatchSummary, derive_branch_name

logger = logging.getLogger(__name__)

PATCH_REPORT = "patchSummary.md"
BRANCH_PREFIX = "codesec/sca/"


class FixState(str, Enum):
    IDLE = "Idle"
    PATCHED = "Patched"
    BRANCH_CREATED = "BranchCreated"
    BRANCH_UPDATED = "BranchUpdated"
    COMMITTED = "Committed"
    PR_CREATED = "PRCreated"
    PR_UPDATED = "PRUpdated"
    RESTORED = "RestoredOriginalBranch"
    FAILED = "Failed"


@dataclass
class FixSuggestion:
    fix_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FixOutcome:
    fix_id: str
    states: List[FixState] = field(default_factory=list)
    branch: str = ""
    pr_url: str = ""
    error: str = ""

    @property
    def state(self) -> FixState:
        return self.states[-1] if self.states else FixState.IDLE

    @property
    def succeeded(self) -> bool:
        return not self.error

    def advance(self, state: FixState) -> None:
        self.states.append(state)
        logger.info("[%s] %s", self.fix_id, state.value)


def load_fix_suggestions(path: str | Path) -> List[FixSuggestion]:
    """Read fix suggestions from an LW-JSON document.

    ``FixSuggestions`` may be a list of objects with a ``FixId`` key or a
    mapping of fix id to suggestion.
    """
    p = Path(path)
    try:
        with open(p, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedReportError(str(p), f"invalid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise MalformedReportError(str(p), "expected a JSON object")

    raw = data.get("FixSuggestions")
    if raw is None:
        return []
    suggestions: List[FixSuggestion] = []
    if isinstance(raw, dict):
        for fix_id, body in raw.items():
            suggestions.append(FixSuggestion(str(fix_id), body if isinstance(body, dict) else {}))
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict) or not item.get("FixId"):
                raise MalformedReportError(str(p), "fix suggestion without 'FixId'")
            suggestions.append(FixSuggestion(str(item["FixId"]), item))
    else:
        raise MalformedReportError(str(p), "'FixSuggestions' must be a list or an object")
    return suggestions


class AutoFixOrchestrator:
    """Create or refresh one fix branch and pull request per suggestion.

    Parameters
    ----------
    repo : git.Repo
        Local checkout the patches are applied to.
    pr_api : github.Repository.Repository
        PyGithub repository handle used for pull-request calls.
    cli : CodeSecCli
        Invoker for the scanner binary.
    owner : str
        Repository owner; qualifies the head branch in PR lookups.
    current_branch : str
        Branch the run was triggered on; fix PRs target it.
    git_user_name, git_user_email : str
        Commit identity written to the repository config.
    branch_prefix : str
        Namespace of the generated fix branches.
    """

    def __init__(
        self,
        repo: Repo,
        pr_api: Any,
        cli: CodeSecCli,
        owner: str,
        current_branch: str,
        git_user_name: str = "CodeSec Bot",
        git_user_email: str = "codesec-bot@users.noreply.github.com",
        branch_prefix: str = BRANCH_PREFIX,
        debug: bool = False,
    ) -> None:
        self.repo = repo
        self.pr_api = pr_api
        self.cli = cli
        self.owner = owner
        self.current_branch = current_branch
        self.branch_prefix = branch_prefix
        self.debug = debug
        self.work_dir = Path(repo.working_tree_dir or ".")
        self._configure_identity(git_user_name, git_user_email)

    def _configure_identity(self, name: str, email: str) -> None:
        with self.repo.config_writer() as cw:
            cw.set_value("user", "name", name)
            cw.set_value("user", "email", email)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------
    def create_prs(self, lwjson_path: str | Path) -> Dict[str, FixOutcome]:
        """Process every fix suggestion independently."""
        suggestions = load_fix_suggestions(lwjson_path)
        logger.info("Found %d fix suggestions in %s", len(suggestions), lwjson_path)
        outcomes: Dict[str, FixOutcome] = {}
        for suggestion in suggestions:
            try:
                outcomes[suggestion.fix_id] = self.pr_for_fix_suggestion(
                    lwjson_path, suggestion.fix_id
                )
            except CodeSecError as exc:
                logger.error("Fix %s failed: %s", suggestion.fix_id, exc)
                outcomes[suggestion.fix_id] = FixOutcome(
                    suggestion.fix_id, [FixState.FAILED], error=str(exc)
                )
            except Exception as exc:
                logger.error("Fix %s failed unexpectedly: %s", suggestion.fix_id, exc)
                logger.debug("Fix %s traceback", suggestion.fix_id, exc_info=True)
                outcomes[suggestion.fix_id] = FixOutcome(
                    suggestion.fix_id, [FixState.FAILED], error=f"{type(exc).__name__}: {exc}"
                )
        return outcomes

    def pr_for_fix_suggestion(self, lwjson_path: str | Path, fix_id: str) -> FixOutcome:
        outcome = FixOutcome(fix_id)
        outcome.advance(FixState.IDLE)

        try:
            try:
                summary = self._patch(lwjson_path, fix_id)
            except Exception:
                # drop whatever the patch run left in the tree
                self._restore()
                raise
            outcome.advance(FixState.PATCHED)

            branch = derive_branch_name(self.branch_prefix, self.current_branch, summary.title)
            outcome.branch = branch
            existed = self._branch_exists(branch)

            with self._on_fix_branch(branch):
                outcome.advance(FixState.BRANCH_UPDATED if existed else FixState.BRANCH_CREATED)
                self._commit_and_push(branch, summary.modified_files)
                outcome.advance(FixState.COMMITTED)
                created, url = self._open_or_update_pr(branch, summary)
                outcome.pr_url = url
                outcome.advance(FixState.PR_CREATED if created else FixState.PR_UPDATED)
        finally:
            (self.work_dir / PATCH_REPORT).unlink(missing_ok=True)
        outcome.advance(FixState.RESTORED)
        return outcome

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------
    def _patch(self, lwjson_path: str | Path, fix_id: str) -> PatchSummary:
        report = self.work_dir / PATCH_REPORT
        args = [
            "sca", "patch", ".",
            "--sbom", str(lwjson_path),
            "--fix-id", fix_id,
            "-o", str(report),
        ]
        if self.debug:
            args.append("--debug")
        logger.info("%s", self.cli.run(*args))
        try:
            text = report.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise MalformedReportError(str(report), f"patch summary not readable ({exc})") from exc
        return PatchSummary.parse(text, source=str(report))

    def _branch_exists(self, branch: str) -> bool:
        if branch in [h.name for h in self.repo.heads]:
            return True
        try:
            return bool(self.repo.git.ls_remote("--heads", "origin", branch).strip())
        except git.exc.GitCommandError:
            logger.debug("Could not query remote branches for %s", branch)
            return False

    @contextmanager
    def _on_fix_branch(self, branch: str) -> Iterator[None]:
        """Check out a fresh ``branch`` from HEAD; always return to the original.

        The return is forced on success too: the fix branch already holds
        the commit, and edits the patch made outside the listed files must
        not leak into the next fix.
        """
        try:
            self.repo.git.checkout("-B", branch)
        except git.exc.GitCommandError as exc:
            self._restore()
            raise GitOperationError(f"Could not create branch {branch}: {exc}") from exc
        try:
            yield
        finally:
            self._restore()

    def _restore(self) -> None:
        try:
            self.repo.git.checkout("-f", self.current_branch)
        except git.exc.GitCommandError as exc:
            raise GitOperationError(
                f"Could not check out original branch {self.current_branch}: {exc}"
            ) from exc

    def _commit_and_push(self, branch: str, files: List[str]) -> None:
        if not files:
            raise GitOperationError(f"Patch for {branch} lists no modified files")
        try:
            self.repo.git.add("--", *files)
            self.repo.git.commit("-m", f"Fix for: {branch}.")
            self.repo.git.push("origin", branch, "--force")
        except git.exc.GitCommandError as exc:
            raise GitOperationError(f"Could not commit/push {branch}: {exc}") from exc

    def _open_or_update_pr(self, branch: str, summary: PatchSummary) -> tuple[bool, str]:
        try:
            open_prs = list(self.pr_api.get_pulls(state="open", head=f"{self.owner}:{branch}"))
            open_prs = [pr for pr in open_prs if pr.head.ref == branch]
            if not open_prs:
                pr = self.pr_api.create_pull(
                    title=summary.title,
                    body=summary.text,
                    head=branch,
                    base=self.current_branch,
                )
                logger.info("Opened pull request %s", pr.html_url)
                return True, pr.html_url
            for pr in open_prs:
                pr.edit(title=summary.title)
                logger.info("Refreshed title of pull request %s", pr.html_url)
            return False, open_prs[0].html_url
        except GithubException as exc:
            detail = exc.data.get("message", "") if isinstance(exc.data, dict) else str(exc.data or "")
            raise ApiError(f"open or update pull request for {branch}", exc.status, detail) from exc
        except OSError as exc:
            # requests transport errors derive from OSError
            raise ApiError(f"open or update pull request for {branch}", None, str(exc)) from exc


def current_repo(path: Optional[str | Path] = None) -> Repo:
    try:
        return Repo(path or Path.cwd(), search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as exc:
        raise GitOperationError(f"Not a git repository: {path or Path.cwd()}") from exc
