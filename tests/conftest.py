"""Shared fixtures and fakes for the CodeSec action tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from ActionEnvironment import ActionEnvironment
from ResultComparator import SourceLink


# ---------------------------------------------------------------------------
# SARIF helpers
# ---------------------------------------------------------------------------
def make_location(uri: str, start: Optional[int] = None, end: Optional[int] = None, text: Optional[str] = None) -> dict:
    region: Dict[str, Any] = {}
    if start is not None:
        region["startLine"] = start
    if end is not None:
        region["endLine"] = end
    loc: Dict[str, Any] = {"physicalLocation": {"artifactLocation": {"uri": uri}, "region": region}}
    if text is not None:
        loc["message"] = {"text": text}
    return loc


def make_result(rule_id: str, status: Optional[str] = None, locations: Optional[list] = None, **extra: Any) -> dict:
    result: Dict[str, Any] = {"ruleId": rule_id, "message": extra.pop("message", {"text": f"{rule_id} message"})}
    if locations is not None:
        result["locations"] = locations
    if status is not None:
        result["properties"] = {"status": status}
    result.update(extra)
    return result


def make_sarif(results: List[dict], driver: str = "scanner", rules: Optional[List[dict]] = None) -> dict:
    drv: Dict[str, Any] = {"name": driver}
    if rules is not None:
        drv["rules"] = rules
    return {"version": "2.1.0", "runs": [{"tool": {"driver": drv}, "results": results}]}


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fake CLI
# ---------------------------------------------------------------------------
class FakeCli:
    """Records invocations; handlers keyed by (tool, mode) produce files."""

    def __init__(self, handlers: Optional[Dict[Tuple[str, str], Callable[[List[str]], None]]] = None) -> None:
        self.handlers = handlers or {}
        self.calls: List[List[str]] = []

    def run(self, *args: str) -> str:
        argv = list(args)
        self.calls.append(argv)
        handler = self.handlers.get(tuple(argv[:2]))
        if handler is not None:
            handler(argv)
        return "ok"


def option(argv: List[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


# ---------------------------------------------------------------------------
# Fake GitHub objects (shaped like PyGithub's)
# ---------------------------------------------------------------------------
class FakeUser:
    def __init__(self, login: str) -> None:
        self.login = login


class FakeComment:
    def __init__(self, issue: "FakeIssue", comment_id: int, body: str, login: str) -> None:
        self.issue = issue
        self.id = comment_id
        self.body = body
        self.user = FakeUser(login)
        self.html_url = f"https://github.com/acme/widgets/pull/{issue.number}#issuecomment-{comment_id}"
        self.edits = 0

    def edit(self, body: str) -> None:
        self.body = body
        self.edits += 1

    def delete(self) -> None:
        self.issue.comments.remove(self)


class FakeIssue:
    def __init__(self, number: int, login: str = "github-actions[bot]") -> None:
        self.number = number
        self.login = login
        self.comments: List[FakeComment] = []
        self._next_id = 100

    def get_comments(self) -> List[FakeComment]:
        return list(self.comments)

    def create_comment(self, body: str) -> FakeComment:
        self._next_id += 1
        comment = FakeComment(self, self._next_id, body, self.login)
        self.comments.append(comment)
        return comment


class FakeRepo:
    def __init__(self) -> None:
        self.issues: Dict[int, FakeIssue] = {}

    def get_issue(self, number: int) -> FakeIssue:
        return self.issues.setdefault(number, FakeIssue(number))


class FakeRef:
    def __init__(self, ref: str) -> None:
        self.ref = ref


class FakePull:
    def __init__(self, number: int, head: str, base: str, title: str, body: str) -> None:
        self.number = number
        self.head = FakeRef(head)
        self.base = FakeRef(base)
        self.title = title
        self.body = body
        self.state = "open"
        self.html_url = f"https://github.com/acme/widgets/pull/{number}"

    def edit(self, title: Optional[str] = None, **kwargs: Any) -> None:
        if title is not None:
            self.title = title


class FakePullsApi:
    def __init__(self) -> None:
        self.pulls: List[FakePull] = []
        self.created: List[FakePull] = []

    def get_pulls(self, state: str = "open", head: str = "") -> List[FakePull]:
        branch = head.split(":", 1)[-1]
        return [p for p in self.pulls if p.state == state and p.head.ref == branch]

    def create_pull(self, title: str, body: str, head: str, base: str) -> FakePull:
        pull = FakePull(len(self.pulls) + 1, head, base, title, body)
        self.pulls.append(pull)
        self.created.append(pull)
        return pull


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def action_env(tmp_path: Path) -> ActionEnvironment:
    return ActionEnvironment(
        repository="acme/widgets",
        owner="acme",
        name="widgets",
        ref_name="main",
        sha="abc123",
        env_file=str(tmp_path / "github_env"),
        output_file=str(tmp_path / "github_output"),
    )


@pytest.fixture
def link() -> SourceLink:
    return SourceLink("https://github.com", "acme", "widgets", "abc123")
