"""End-to-end tests of the analysis, auto-fix and display phases."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import pytest

import CodeSecRunner
from ActionEnvironment import ActionInputs
from ArtifactStore import LocalArtifactStore
from AutoFixOrchestrator import FixOutcome, FixState
from CodeSecErrors import ToolExecutionError
from CommentPublisher import CommentPublisher
from CodeSecRunner import (
    RunContext,
    _build_action_cfg,
    display_results,
    run,
    run_analysis,
    sast_args,
    sca_args,
)
from RunTelemetry import RunTelemetry
from conftest import FakeCli, FakeRepo, make_location, make_result, make_sarif, option, write_json


def _scan_handler(results: List[dict]):
    def handler(argv):
        write_json(Path(option(argv, "-o")), make_sarif(results))
    return handler


@pytest.fixture
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def work_dir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def make_ctx(action_env, store, work_dir, cli, repo=None, **inputs) -> RunContext:
    repo = repo if repo is not None else FakeRepo()
    return RunContext(
        inputs=ActionInputs(**inputs),
        env=action_env,
        config=_build_action_cfg(),
        cli=cli,
        artifacts=store,
        telemetry=RunTelemetry(),
        work_dir=work_dir,
        publisher_factory=lambda ctx: CommentPublisher(repo, 7),
    )


def outputs(action_env) -> str:
    path = Path(action_env.output_file)
    return path.read_text(encoding="utf-8") if path.exists() else ""


# ---------------------------------------------------------------------------
# Argument construction
# ---------------------------------------------------------------------------
def test_sca_args():
    args = sca_args(ActionInputs(), "out/sca.sarif")
    assert args == [
        "sca", "scan", ".", "-o", "out/sca.sarif", "--formats", "sarif", "--deployment", "ci", "--keyring",
    ]
    direct = sca_args(ActionInputs(eval_indirect_dependencies=False), "sca.sarif", debug=True)
    assert direct[-2:] == ["--eval-direct-only", "--debug"]


def test_sast_args_prefer_classes_over_jar():
    args = sast_args(ActionInputs(jar="app.jar", classes="build/classes", classpath="lib/*"), "sast.sarif")
    assert option(args, "--classes") == "build/classes"
    assert option(args, "--classpath") == "lib/*"
    assert "--sources" not in args
    assert option(sast_args(ActionInputs(jar="app.jar"), "sast.sarif"), "--classes") == "app.jar"


# ---------------------------------------------------------------------------
# Analysis phase
# ---------------------------------------------------------------------------
def test_analysis_uploads_reports_and_sets_outputs(action_env, store, work_dir, monkeypatch):
    monkeypatch.setenv("CODESEC_RESULTS_NEW", "unset")
    cli = FakeCli({
        ("sca", "scan"): _scan_handler([make_result("CVE-1", locations=[make_location("package.json", 1)])]),
        ("sast", "scan"): _scan_handler([]),
    })
    ctx = make_ctx(action_env, store, work_dir, cli, target="new", tools="SCA, sast, iac")
    uploaded = run_analysis(ctx)

    assert [c[:2] for c in cli.calls] == [["sca", "scan"], ["sast", "scan"]]
    assert [Path(p).name for p in uploaded] == ["sca.sarif", "sast.sarif"]
    assert sorted(p.name for p in (store.root / "results-new").iterdir()) == ["sast.sarif", "sca.sarif"]
    assert "new-completed=true" in outputs(action_env)
    assert "CODESEC_RESULTS_NEW=results-new" in Path(action_env.env_file).read_text()
    assert ctx.telemetry.tools == ["sca", "sast", "iac"]


def test_failed_scan_is_caught_and_recorded(action_env, store, work_dir, caplog):
    def fail(argv):
        raise ToolExecutionError(argv, 1, stderr="license expired")

    ctx = make_ctx(action_env, store, work_dir, FakeCli({("sca", "scan"): fail}), target="old")
    with caplog.at_level(logging.ERROR):
        assert run(ctx) is False
    assert "license expired" in ctx.telemetry.error
    assert ctx.telemetry.phases[0].name == "analysis"
    assert ctx.telemetry.phases[0].outcome == "error"
    assert "old-completed" not in outputs(action_env)
    assert any("license expired" in r.getMessage() for r in caplog.records)


def test_autofix_runs_after_analysis(action_env, store, work_dir, tmp_path):
    lwjson = write_json(tmp_path / "fixes.lwjson", {"FixSuggestions": []})
    calls = []

    class StubOrchestrator:
        def create_prs(self, path):
            calls.append(path)
            return {
                "ok": FixOutcome("ok", [FixState.RESTORED]),
                "bad": FixOutcome("bad", [FixState.FAILED], error="push rejected"),
            }

    cli = FakeCli({("sca", "scan"): _scan_handler([])})
    ctx = make_ctx(action_env, store, work_dir, cli, target="new", fix_suggestions=str(lwjson))
    ctx.autofix_factory = lambda c: StubOrchestrator()

    assert run(ctx) is True
    assert calls == [str(lwjson)]
    assert [p.name for p in ctx.telemetry.phases] == ["analysis", "autofix"]
    assert ctx.telemetry.metadata["fixes"] == {"total": 2, "failed": ["bad"]}


def test_autofix_without_token_is_skipped(action_env, store, work_dir, tmp_path):
    lwjson = write_json(tmp_path / "fixes.lwjson", {"FixSuggestions": [{"FixId": "1"}]})
    ctx = make_ctx(action_env, store, work_dir, FakeCli(), fix_suggestions=str(lwjson))
    assert CodeSecRunner.run_autofix(ctx) == {}


# ---------------------------------------------------------------------------
# Display phase
# ---------------------------------------------------------------------------
def _seed(store, name, tool):
    bundle = store.root / name
    write_json(bundle / f"{tool}.sarif", make_sarif([]))


def _sarif_compare_cli():
    compared = make_sarif(
        [
            make_result("sql-injection", "added", [make_location("src/a.py", 10, 12)]),
            make_result("xss", "removed", [make_location("src/b.py", 3)]),
        ]
    )
    return FakeCli({("sast", "compare"): lambda argv: write_json(Path(option(argv, "-o")), compared)})


def test_new_issue_is_posted_once(action_env, store, work_dir):
    _seed(store, "results-old", "sast")
    _seed(store, "results-new", "sast")
    repo = FakeRepo()
    ctx = make_ctx(action_env, store, work_dir, _sarif_compare_cli(), repo=repo, token="t", footer="Scanned by CodeSec")
    ctx.config["compare"]["format"] = "sarif"

    reports = display_results(ctx)
    display_results(ctx)

    assert list(reports) == ["sast"]
    comments = repo.get_issue(7).comments
    assert len(comments) == 1
    bullets = [line for line in comments[0].body.splitlines() if line.startswith("* ")]
    assert len(bullets) == 1
    assert bullets[0].startswith("* [a.py:10-12](https://github.com/acme/widgets/blob/abc123/src/a.py#L10-L12)")
    assert "Scanned by CodeSec" in comments[0].body
    assert f"posted-comment={comments[0].html_url}" in outputs(action_env)
    assert "display-completed=true" in outputs(action_env)


def test_nothing_to_compare_resolves_comment(action_env, store, work_dir):
    repo = FakeRepo()
    stale = CommentPublisher(repo, 7)
    stale.post_comment_if_in_pr("old findings")
    cli = FakeCli()
    ctx = make_ctx(action_env, store, work_dir, cli, repo=repo, token="t")

    assert display_results(ctx) == {}
    assert cli.calls == []
    assert repo.get_issue(7).comments == []
    assert "posted-comment" not in outputs(action_env)
    assert "display-completed=true" in outputs(action_env)


def test_only_one_side_present_is_skipped(action_env, store, work_dir):
    _seed(store, "results-new", "sca")
    cli = FakeCli()
    ctx = make_ctx(action_env, store, work_dir, cli, token="t")
    assert display_results(ctx) == {}
    assert cli.calls == []


def test_new_issues_without_token_do_not_post(action_env, store, work_dir):
    _seed(store, "results-old", "sast")
    _seed(store, "results-new", "sast")
    repo = FakeRepo()
    ctx = make_ctx(action_env, store, work_dir, _sarif_compare_cli(), repo=repo)
    ctx.config["compare"]["format"] = "sarif"
    reports = display_results(ctx)
    assert reports["sast"].issue_count == 1
    assert repo.get_issue(7).comments == []


def test_run_selects_display_without_target(action_env, store, work_dir):
    ctx = make_ctx(action_env, store, work_dir, FakeCli())
    assert run(ctx) is True
    assert [p.name for p in ctx.telemetry.phases] == ["display"]
    assert ctx.telemetry.phases[0].outcome == "success"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
@pytest.fixture
def quiet_main(monkeypatch):
    monkeypatch.setattr(CodeSecRunner, "_setup_logging", lambda *a, **k: None)
    for name in ("GITHUB_REPOSITORY", "INPUT_TARGET", "INPUT_CONFIG", "INPUT_FIX-SUGGESTIONS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("CODESEC_TELEMETRY_ENDPOINT", raising=False)


def test_main_reports_error_and_flushes_telemetry_once(quiet_main, tmp_path, caplog, monkeypatch):
    flushes = []
    original = RunTelemetry.flush

    def counting_flush(self):
        flushes.append(self)
        return original(self)

    monkeypatch.setattr(RunTelemetry, "flush", counting_flush)
    with caplog.at_level(logging.INFO):
        code = CodeSecRunner.main(["--config", str(tmp_path / "missing.yaml")])

    assert code == 0
    assert len(flushes) == 1
    assert "MissingInputError" in flushes[0].error
    telemetry_lines = [r for r in caplog.records if r.getMessage().startswith("Telemetry:")]
    assert len(telemetry_lines) == 1


def test_main_fails_step_when_policy_says_so(quiet_main, tmp_path):
    config = tmp_path / "codesec.yaml"
    config.write_text("codesec:\n  policy:\n    fail_on_error: true\n", encoding="utf-8")
    assert CodeSecRunner.main(["--config", str(config)]) == 1


def test_workflow_command_filter_prefixes_levels():
    log_filter = CodeSecRunner._WorkflowCommandFilter()

    def record(level, msg):
        rec = logging.LogRecord("x", level, __file__, 1, msg, None, None)
        log_filter.filter(rec)
        return rec.msg

    assert record(logging.ERROR, "3 new SCA issues") == "::error::3 new SCA issues"
    assert record(logging.CRITICAL, "fatal") == "::error::fatal"
    assert record(logging.WARNING, "skipping") == "::warning::skipping"
    assert record(logging.INFO, "scanning") == "scanning"
    assert record(logging.ERROR, "::group::x") == "::group::x"


def _counting_flush(monkeypatch):
    flushes = []
    original = RunTelemetry.flush

    def counting_flush(self):
        flushes.append(self)
        return original(self)

    monkeypatch.setattr(RunTelemetry, "flush", counting_flush)
    return flushes


def test_main_invalid_config_still_flushes_telemetry(quiet_main, tmp_path, monkeypatch):
    config = tmp_path / "codesec.yaml"
    config.write_text("cli: [unclosed\n", encoding="utf-8")
    monkeypatch.setenv("INPUT_CONFIG", str(config))
    flushes = _counting_flush(monkeypatch)

    assert CodeSecRunner.main([]) == 0
    assert len(flushes) == 1
    assert flushes[0].error.startswith("MalformedReportError")


def test_main_non_numeric_telemetry_timeout(quiet_main, tmp_path, monkeypatch):
    config = tmp_path / "codesec.yaml"
    config.write_text("telemetry:\n  timeout: soon\npolicy:\n  fail_on_error: true\n", encoding="utf-8")
    flushes = _counting_flush(monkeypatch)

    assert CodeSecRunner.main(["--config", str(config)]) == 1
    assert len(flushes) == 1
    assert flushes[0].error.startswith("ValueError")


def test_main_survives_unusable_telemetry_endpoint(quiet_main, tmp_path, monkeypatch):
    monkeypatch.setenv("CODESEC_TELEMETRY_ENDPOINT", "not-a-url")
    assert CodeSecRunner.main(["--config", str(tmp_path / "missing.yaml")]) == 0
