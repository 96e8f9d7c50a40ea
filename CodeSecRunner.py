#!/usr/bin/env python3
"""CodeSecRunner.py -- Entry point of the code-analysis CI action.

Phases
------
ANALYSIS -- ``target`` input set: scan the checkout   -> sca.sarif / sast.sarif
                                  upload bundle          -> results-<target>
AUTOFIX  -- ``fix-suggestions`` input set (after ANALYSIS):
                                  branch + PR per fix id
DISPLAY  -- ``target`` input empty: download results-old / results-new,
                                  compare per tool, comment on the PR

Settings are defined as constants below and can be overlaid by a YAML file
(``config`` input, default ``config/codesec.yaml``).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from github import Auth, Github

from ActionEnvironment import ActionEnvironment, ActionInputs, load_config
from ArtifactStore import ArtifactStore, LocalArtifactStore
from AutoFixOrchestrator import AutoFixOrchestrator, current_repo
from CodeSecCli import CodeSecCli
from CommentPublisher import CommentPublisher
from ResultComparator import ComparisonReport, ResultComparator, SourceLink, build_comment_body
from RunTelemetry import RunTelemetry, invocation_metadata
from SarifResults import print_results

BASE_DIR = Path(__file__).resolve().parent

# ===================================================================
# SETTINGS
# ===================================================================

# --- Scanner CLI ---
CLI_BINARY = "lacework"
CLI_TIMEOUT = None  # seconds; None waits for the scanner to finish

# --- Reports ---
SCA_REPORT = "sca.sarif"
SAST_REPORT = "sast.sarif"
REPORTS = {"sca": SCA_REPORT, "sast": SAST_REPORT}
OLD_RESULTS = "results-old"
NEW_RESULTS = "results-new"
COMPARE_FORMAT = "markdown"  # or "sarif" for locally rendered issues

# --- Comment ---
COMMENT_IDENTITY = "code-analysis"
COMMENT_AUTHOR = ""  # e.g. "github-actions[bot]"; empty accepts any author
COMMENT_HEADER = "Code analysis found potential new issues in this PR."

# --- Auto-fix ---
AUTOFIX_GIT_USER_NAME = "CodeSec Bot"
AUTOFIX_GIT_USER_EMAIL = "codesec-bot@users.noreply.github.com"
AUTOFIX_BRANCH_PREFIX = "codesec/sca/"

# --- Artifacts ---
ARTIFACT_ROOT = ".codesec-artifacts"

# --- Telemetry ---
TELEMETRY_ENDPOINT = ""
TELEMETRY_TIMEOUT = 10

# --- Policy ---
FAIL_ON_ERROR = False

# --- Logging ---
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
ACTIONS_LOG_FORMAT = "%(message)s"

DEFAULT_CONFIG_PATH = "config/codesec.yaml"


def _build_action_cfg() -> dict:
    """Assemble the action config dict from the constants above."""
    return {
        "cli": {
            "binary": CLI_BINARY,
            "timeout": CLI_TIMEOUT,
        },
        "compare": {
            "format": COMPARE_FORMAT,
        },
        "comment": {
            "identity": COMMENT_IDENTITY,
            "author": COMMENT_AUTHOR,
            "header": COMMENT_HEADER,
        },
        "autofix": {
            "git_user_name": AUTOFIX_GIT_USER_NAME,
            "git_user_email": AUTOFIX_GIT_USER_EMAIL,
            "branch_prefix": AUTOFIX_BRANCH_PREFIX,
        },
        "artifacts": {
            "root": ARTIFACT_ROOT,
        },
        "telemetry": {
            "endpoint": TELEMETRY_ENDPOINT,
            "timeout": TELEMETRY_TIMEOUT,
        },
        "policy": {
            "fail_on_error": FAIL_ON_ERROR,
        },
        "logging": {
            "level": LOG_LEVEL,
            "format": LOG_FORMAT,
        },
    }


# ===================================================================
# Logging
# ===================================================================
class _WorkflowCommandFilter(logging.Filter):
    """Prefix warnings and errors with the matching workflow command."""

    PREFIXES = {logging.WARNING: "::warning::", logging.ERROR: "::error::"}

    def filter(self, record: logging.LogRecord) -> bool:
        level = logging.ERROR if record.levelno >= logging.ERROR else record.levelno
        prefix = self.PREFIXES.get(level)
        if prefix and not str(record.msg).startswith("::"):
            record.msg = f"{prefix}{record.msg}"
        return True


def _setup_logging(level_name: str, log_format: str, in_actions: bool) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Reset handlers so repeated runs in the same process don't duplicate logs.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if in_actions:
        console_handler.setFormatter(logging.Formatter(ACTIONS_LOG_FORMAT))
        console_handler.addFilter(_WorkflowCommandFilter())
    else:
        console_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console_handler)


logger = logging.getLogger(__name__)


# ===================================================================
# Run context
# ===================================================================
@dataclass
class RunContext:
    """Everything a phase needs, threaded explicitly through the run."""

    inputs: ActionInputs
    env: ActionEnvironment
    config: Dict[str, Any]
    cli: CodeSecCli
    artifacts: ArtifactStore
    telemetry: RunTelemetry
    work_dir: Path = field(default_factory=Path.cwd)
    publisher_factory: Optional[Callable[["RunContext"], CommentPublisher]] = None
    autofix_factory: Optional[Callable[["RunContext"], Any]] = None

    def publisher(self) -> CommentPublisher:
        if self.publisher_factory is not None:
            return self.publisher_factory(self)
        comment_cfg = self.config.get("comment", {})
        return CommentPublisher.from_environment(
            self.env,
            self.inputs.token,
            identity=comment_cfg.get("identity", COMMENT_IDENTITY),
            author=comment_cfg.get("author", COMMENT_AUTHOR),
        )

    def link(self) -> SourceLink:
        return SourceLink(self.env.server_url, self.env.owner, self.env.name, self.env.sha)


# ===================================================================
# Analysis phase
# ===================================================================
def sca_args(inputs: ActionInputs, report: str, debug: bool = False) -> List[str]:
    args = ["sca", "scan", ".", "-o", report, "--formats", "sarif", "--deployment", "ci", "--keyring"]
    if not inputs.eval_indirect_dependencies:
        args.append("--eval-direct-only")
    if debug:
        args.append("--debug")
    return args


def sast_args(inputs: ActionInputs, report: str, debug: bool = False) -> List[str]:
    args = ["sast", "scan", "--verbose"]
    if inputs.classpath:
        args += ["--classpath", inputs.classpath]
    if inputs.sources:
        args += ["--sources", inputs.sources]
    if inputs.sast_classes:
        args += ["--classes", inputs.sast_classes]
    args += ["-o", report, "--deployment", "ci"]
    if debug:
        args.append("--debug")
    return args


_ARG_BUILDERS = {"sca": sca_args, "sast": sast_args}


def run_analysis(ctx: RunContext) -> List[str]:
    """Scan with every requested tool and upload the reports."""
    target = ctx.inputs.target
    logger.info("Analyzing %s", target)
    tools = ctx.inputs.tool_list()
    ctx.telemetry.tools = tools

    to_upload: List[str] = []
    for tool in tools:
        builder = _ARG_BUILDERS.get(tool)
        if builder is None:
            logger.warning("Unknown tool '%s'; skipping", tool)
            continue
        report = str(ctx.work_dir / REPORTS[tool])
        logger.info("%s", ctx.cli.run(*builder(ctx.inputs, report, ctx.env.debug)))
        print_results(tool, report)
        to_upload.append(report)

    artifact = f"results-{target}"
    ctx.artifacts.upload(artifact, *to_upload)
    if ctx.env.env_file:
        ctx.env.export_variable(f"CODESEC_RESULTS_{_env_suffix(target)}", artifact)
    ctx.env.set_output(f"{target}-completed", True)
    return to_upload


def _env_suffix(target: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in target).upper()


# ===================================================================
# Auto-fix phase
# ===================================================================
def run_autofix(ctx: RunContext) -> Dict[str, Any]:
    """Open or refresh a fix PR for every suggestion in the LW-JSON input."""
    lwjson = ctx.inputs.fix_suggestions
    if not Path(lwjson).exists():
        logger.warning("Fix suggestions %s not found; skipping auto-fix", lwjson)
        return {}
    if ctx.autofix_factory is not None:
        orchestrator = ctx.autofix_factory(ctx)
    else:
        if not ctx.inputs.token:
            logger.warning("Auto-fix needs a token; skipping")
            return {}
        autofix_cfg = ctx.config.get("autofix", {})
        client = Github(auth=Auth.Token(ctx.inputs.token), base_url=ctx.env.api_url)
        orchestrator = AutoFixOrchestrator(
            repo=current_repo(ctx.work_dir),
            pr_api=client.get_repo(ctx.env.repository),
            cli=ctx.cli,
            owner=ctx.env.owner,
            current_branch=ctx.env.current_branch(),
            git_user_name=autofix_cfg.get("git_user_name", AUTOFIX_GIT_USER_NAME),
            git_user_email=autofix_cfg.get("git_user_email", AUTOFIX_GIT_USER_EMAIL),
            branch_prefix=autofix_cfg.get("branch_prefix", AUTOFIX_BRANCH_PREFIX),
            debug=ctx.env.debug,
        )
    outcomes = orchestrator.create_prs(lwjson)
    failed = [fix_id for fix_id, o in outcomes.items() if not o.succeeded]
    ctx.telemetry.metadata["fixes"] = {
        "total": len(outcomes),
        "failed": failed,
    }
    return outcomes


# ===================================================================
# Display phase
# ===================================================================
def compare_downloaded(ctx: RunContext, old_dir: Path, new_dir: Path) -> Dict[str, ComparisonReport]:
    comparator = ResultComparator(
        ctx.cli,
        ctx.link(),
        output_format=ctx.config.get("compare", {}).get("format", COMPARE_FORMAT),
        work_dir=ctx.work_dir,
        debug=ctx.env.debug,
    )
    reports: Dict[str, ComparisonReport] = {}
    for tool, filename in REPORTS.items():
        old_report = old_dir / filename
        new_report = new_dir / filename
        if not (old_report.exists() and new_report.exists()):
            logger.info("No %s reports to compare; skipping", tool.upper())
            continue
        reports[tool] = comparator.compare(tool, old_report, new_report)
    return reports


def display_results(ctx: RunContext) -> Dict[str, ComparisonReport]:
    """Compare old vs. new results and keep the PR comment in sync."""
    logger.info("Displaying results")
    old_dir = ctx.artifacts.download(OLD_RESULTS, ctx.work_dir)
    new_dir = ctx.artifacts.download(NEW_RESULTS, ctx.work_dir)
    reports = compare_downloaded(ctx, old_dir, new_dir)
    ctx.telemetry.tools = list(reports)

    publisher = ctx.publisher()
    if any(r.has_new_issues for r in reports.values()) and ctx.inputs.token:
        logger.info("Posting comment to GitHub PR as there were new issues introduced")
        body = build_comment_body(
            reports.values(),
            footer=ctx.inputs.footer,
            header=ctx.config.get("comment", {}).get("header", COMMENT_HEADER),
        )
        logger.info("%s", body)
        comment_url = publisher.post_comment_if_in_pr(body)
        if comment_url is not None:
            ctx.env.set_output("posted-comment", comment_url)
    else:
        publisher.resolve_existing_comment_if_found()
    ctx.env.set_output("display-completed", True)
    return reports


# ===================================================================
# Entry point
# ===================================================================
def run(ctx: RunContext) -> bool:
    """Run the selected phase; returns False if an error was caught."""
    try:
        if ctx.inputs.target:
            with ctx.telemetry.phase("analysis"):
                run_analysis(ctx)
            if ctx.inputs.fix_suggestions:
                with ctx.telemetry.phase("autofix"):
                    run_autofix(ctx)
        else:
            with ctx.telemetry.phase("display"):
                display_results(ctx)
    except Exception as exc:
        # TODO: fail the step here once errors are meant to be fatal
        logger.error("%s", exc)
        logger.debug("Run failed", exc_info=True)
        ctx.telemetry.record_error(exc)
        return False
    return True


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """CLI flags override the INPUT_* environment variables."""
    parser = argparse.ArgumentParser(description="Run code analysis and report new findings.")
    parser.add_argument("--target", help="Analysis target name; empty runs the display phase.")
    parser.add_argument("--tools", help="Comma-separated tools (sca, sast).")
    parser.add_argument("--jar", help="Jar to scan with SAST.")
    parser.add_argument("--classes", help="Compiled classes to scan with SAST.")
    parser.add_argument("--classpath", help="Classpath for the SAST scan.")
    parser.add_argument("--sources", help="Source directories for the SAST scan.")
    parser.add_argument("--eval-indirect-dependencies", help="'false' evaluates direct dependencies only.")
    parser.add_argument("--footer", help="Text appended to the PR comment.")
    parser.add_argument("--fix-suggestions", help="LW-JSON document with fix suggestions.")
    parser.add_argument("--config", help=f"YAML config overlay (default {DEFAULT_CONFIG_PATH}).")
    return parser.parse_args(argv)


def _apply_overrides(inputs: ActionInputs, args: argparse.Namespace) -> ActionInputs:
    for name in ("target", "tools", "jar", "classes", "classpath", "sources", "footer", "fix_suggestions", "config"):
        value = getattr(args, name, None)
        if value is not None:
            setattr(inputs, name, value)
    if args.eval_indirect_dependencies is not None:
        inputs.eval_indirect_dependencies = args.eval_indirect_dependencies.lower() != "false"
    return inputs


def main(argv: Optional[List[str]] = None) -> int:
    in_actions = os.environ.get("GITHUB_ACTIONS") == "true"
    _setup_logging(LOG_LEVEL, LOG_FORMAT, in_actions)

    telemetry = RunTelemetry(endpoint=os.environ.get("CODESEC_TELEMETRY_ENDPOINT", ""))
    fail_on_error = FAIL_ON_ERROR
    ok = False
    try:
        args = _parse_args(argv)
        inputs = _apply_overrides(ActionInputs.from_env(), args)
        config_path = inputs.config or str(BASE_DIR / DEFAULT_CONFIG_PATH)
        cfg = load_config(_build_action_cfg(), config_path)
        fail_on_error = bool(cfg.get("policy", {}).get("fail_on_error", FAIL_ON_ERROR))

        log_cfg = cfg.get("logging", {})
        _setup_logging(log_cfg.get("level", LOG_LEVEL), log_cfg.get("format", LOG_FORMAT), in_actions)

        tel_cfg = cfg.get("telemetry", {})
        telemetry.endpoint = tel_cfg.get("endpoint") or telemetry.endpoint
        telemetry.timeout_seconds = int(tel_cfg.get("timeout", TELEMETRY_TIMEOUT))

        env = ActionEnvironment.from_env()
        telemetry.metadata = invocation_metadata(
            env,
            phase="analysis" if inputs.target else "display",
            target=inputs.target,
            tools=inputs.tool_list(),
        )
        cli_cfg = cfg.get("cli", {})
        ctx = RunContext(
            inputs=inputs,
            env=env,
            config=cfg,
            cli=CodeSecCli(binary=cli_cfg.get("binary", CLI_BINARY), timeout=cli_cfg.get("timeout")),
            artifacts=LocalArtifactStore(
                os.environ.get("CODESEC_ARTIFACT_ROOT") or cfg.get("artifacts", {}).get("root", ARTIFACT_ROOT)
            ),
            telemetry=telemetry,
        )
        ok = run(ctx)
    except Exception as exc:
        logger.error("%s", exc)
        logger.debug("Run setup failed", exc_info=True)
        telemetry.record_error(exc)
    finally:
        telemetry.flush()

    if not ok and fail_on_error:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
