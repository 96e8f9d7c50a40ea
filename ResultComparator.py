"""ResultComparator.py -- Diff two scan reports and turn new findings into issues.

The scanner's ``compare`` mode does the actual diffing.  It can either hand
back a ready-made markdown fragment (default) or a SARIF log whose findings
carry ``properties.status`` (``added``/``removed``); the latter is rendered
here, one ``Issue`` per (finding x location).

Classes
-------
Issue
    One UI-ready line for the pull-request comment.
ComparisonReport
    New issues of one tool, in either rendering variant.
SourceLink
    Builds clickable blob links for the current commit.
SastFindingRenderer / ScaFindingRenderer
    Per-family extraction of message and details from a finding.
ResultComparator
    Runs the CLI compare mode and collects the report.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ActionEnvironment import log_group
from CodeSecCli import CodeSecCli
from SarifResults import driver_name, load_sarif, run_results

logger = logging.getLogger(__name__)

NO_INFORMATION = "No information available on alert"
NO_RULE_DESCRIPTION = "No information available on alert."
UNKNOWN_LOCATION = "Unknown location"

COMMENT_HEADER = "Code analysis found potential new issues in this PR."

_FILE_SCHEME = re.compile(r"^file:/*")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass
class Issue:
    summary: str
    details: Optional[str] = None


@dataclass
class ComparisonReport:
    tool: str
    issues: List[Issue] = field(default_factory=list)
    markdown: str = ""

    @property
    def has_new_issues(self) -> bool:
        return bool(self.issues) or bool(self.markdown.strip())

    @property
    def issue_count(self) -> int:
        return len(self.issues)


@dataclass
class SourceLink:
    """Blob links into ``<server>/<owner>/<repo>`` at commit ``sha``."""

    server_url: str
    owner: str
    repo: str
    sha: str

    @property
    def base(self) -> str:
        return f"{self.server_url.rstrip('/')}/{self.owner}/{self.repo}/blob/{self.sha}"

    def template(self) -> str:
        """Link pattern the CLI fills in with ``$FILENAME`` and ``$LINENUMBER``."""
        return f"{self.base}/$FILENAME#L$LINENUMBER"

    def render(self, location: Optional[Dict[str, Any]]) -> str:
        """Markdown link ``[file:start-end](url)`` or ``Unknown location``."""
        if not isinstance(location, dict):
            return UNKNOWN_LOCATION
        physical = location.get("physicalLocation") or {}
        uri = (physical.get("artifactLocation") or {}).get("uri")
        region = physical.get("region") or {}
        start = region.get("startLine")
        end = region.get("endLine")
        if not uri or start is None:
            return UNKNOWN_LOCATION
        path = _FILE_SCHEME.sub("", uri)
        name = path.split("/")[-1]
        if end is not None:
            return f"[{name}:{start}-{end}]({self.base}/{path}#L{start}-L{end})"
        return f"[{name}:{start}]({self.base}/{path}#L{start})"


# ---------------------------------------------------------------------------
# Finding renderers (one per tool family)
# ---------------------------------------------------------------------------
class FindingRenderer:
    """Extract the one-line message and optional details of a finding."""

    def __init__(self, link: SourceLink) -> None:
        self.link = link

    def message(self, vuln: Dict[str, Any]) -> str:
        raise NotImplementedError

    def details(self, vuln: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def issues(self, vuln: Dict[str, Any]) -> List[Issue]:
        message = self.message(vuln)
        details = self.details(vuln)
        locations = vuln.get("locations")
        if not isinstance(locations, list) or not locations:
            return [Issue(summary=f"{UNKNOWN_LOCATION} — {message}", details=details)]
        return [
            Issue(summary=f"{self.link.render(loc)} — {message}", details=details)
            for loc in locations
        ]


class SastFindingRenderer(FindingRenderer):
    def message(self, vuln: Dict[str, Any]) -> str:
        msg = vuln.get("message") or {}
        return msg.get("markdown") or msg.get("text") or NO_INFORMATION

    def details(self, vuln: Dict[str, Any]) -> Optional[str]:
        code_flows = vuln.get("codeFlows") or []
        if not code_flows:
            return None
        thread_flows = code_flows[0].get("threadFlows") or []
        if not thread_flows:
            return None
        lines = ["Example problematic flow of data:", ""]
        for idx, step in enumerate(thread_flows[0].get("locations") or [], 1):
            location = step.get("location") or {}
            line = f"{idx}. {self.link.render(location)}"
            text = (location.get("message") or {}).get("text")
            if text is not None:
                line += f": {text}"
            lines.append(line)
        return "\n".join(lines) + "\n"


class ScaFindingRenderer(FindingRenderer):
    def __init__(self, link: SourceLink, rule_descriptions: Dict[str, str]) -> None:
        super().__init__(link)
        self.rule_descriptions = rule_descriptions

    @staticmethod
    def rule_map(run: Dict[str, Any]) -> Dict[str, str]:
        """Map rule id -> short description from the driver's rule catalog."""
        rules = (((run.get("tool") or {}).get("driver") or {}).get("rules")) or []
        descriptions: Dict[str, str] = {}
        for rule in rules:
            rule_id = rule.get("id")
            if not rule_id:
                continue
            short = (rule.get("shortDescription") or {}).get("text")
            descriptions[rule_id] = short or NO_RULE_DESCRIPTION
        logger.debug("Loaded %d rule descriptions", len(descriptions))
        return descriptions

    def message(self, vuln: Dict[str, Any]) -> str:
        rule_id = vuln.get("ruleId")
        if not rule_id:
            return NO_INFORMATION
        return self.rule_descriptions.get(rule_id, NO_INFORMATION)

    def details(self, vuln: Dict[str, Any]) -> Optional[str]:
        return (vuln.get("message") or {}).get("text") or NO_INFORMATION


def renderer_for(tool: str, run: Dict[str, Any], link: SourceLink) -> Optional[FindingRenderer]:
    family = tool.lower()
    if family == "sast":
        return SastFindingRenderer(link)
    if family == "sca":
        return ScaFindingRenderer(link, ScaFindingRenderer.rule_map(run))
    return None


def collect_added_issues(tool: str, log: Dict[str, Any], link: SourceLink) -> List[Issue]:
    """Issues for every finding whose comparison status is ``added``."""
    issues: List[Issue] = []
    for run in log.get("runs", []):
        renderer = renderer_for(tool, run, link)
        if renderer is None:
            logger.warning("No renderer for tool %s; skipping run", tool)
            continue
        results = run_results(run)
        if results:
            logger.info(
                "There were changes in %d results from %s", len(results), driver_name(run)
            )
        for vuln in results:
            if (vuln.get("properties") or {}).get("status") == "added":
                issues.extend(renderer.issues(vuln))
    return issues


# ---------------------------------------------------------------------------
# Comparator
# ---------------------------------------------------------------------------
class ResultComparator:
    """Compare an old and a new report of one tool with the CLI.

    Parameters
    ----------
    cli : CodeSecCli
        Invoker for the scanner binary.
    link : SourceLink
        Where clickable references should point.
    output_format : str
        ``markdown`` (CLI renders the fragment) or ``sarif`` (rendered here).
    work_dir : str | Path
        Directory the comparison outputs are written to.
    debug : bool
        Pass ``--debug`` to the CLI.
    """

    FORMATS = ("markdown", "sarif")

    def __init__(
        self,
        cli: CodeSecCli,
        link: SourceLink,
        output_format: str = "markdown",
        work_dir: str | Path = ".",
        debug: bool = False,
    ) -> None:
        if output_format not in self.FORMATS:
            raise ValueError(f"Unknown comparison format: {output_format}")
        self.cli = cli
        self.link = link
        self.output_format = output_format
        self.work_dir = Path(work_dir)
        self.debug = debug

    def compare(self, tool: str, old_report: str | Path, new_report: str | Path) -> ComparisonReport:
        label = tool.upper()
        with log_group(f"Comparing {label} results"):
            if self.output_format == "markdown":
                report = self._compare_markdown(tool, old_report, new_report)
            else:
                report = self._compare_sarif(tool, old_report, new_report)

            if report.has_new_issues:
                count = report.issue_count or "Potential"
                # TODO: fail the step once new findings are meant to block merges
                logger.error(
                    "%s new %s issues were introduced, see above in the logs for details",
                    count,
                    label,
                )
            else:
                logger.info("No changes in %s issues", label)
        return report

    def _base_args(self, tool: str, old_report: str | Path, new_report: str | Path) -> List[str]:
        return [tool, "compare", "--old", str(old_report), "--new", str(new_report)]

    def _compare_markdown(self, tool: str, old_report: str | Path, new_report: str | Path) -> ComparisonReport:
        output = self.work_dir / f"{tool}.md"
        args = self._base_args(tool, old_report, new_report) + [
            "--markdown", str(output),
            "--link", self.link.template(),
            "--markdown-variant", "GitHub",
            "--deployment", "ci",
        ]
        if self.debug:
            args.append("--debug")
        logger.info("%s", self.cli.run(*args))
        markdown = output.read_text(encoding="utf-8", errors="replace") if output.exists() else ""
        return ComparisonReport(tool=tool, markdown=markdown)

    def _compare_sarif(self, tool: str, old_report: str | Path, new_report: str | Path) -> ComparisonReport:
        output = self.work_dir / f"{tool}-compare.sarif"
        args = self._base_args(tool, old_report, new_report) + ["-o", str(output)]
        if self.debug:
            args.append("--debug")
        logger.info("%s", self.cli.run(*args))
        log = load_sarif(output)
        return ComparisonReport(tool=tool, issues=collect_added_issues(tool, log, self.link))


# ---------------------------------------------------------------------------
# Comment body
# ---------------------------------------------------------------------------
def _issue_block(report: ComparisonReport) -> str:
    lines = [
        f"<details><summary>{report.tool} found {report.issue_count} potential new issues</summary>",
        "",
    ]
    for issue in report.issues:
        lines.append(f"* {issue.summary}")
        if issue.details is not None:
            details = issue.details.rstrip("\n").replace("\n", "\n  ")
            lines.append("  <details><summary>More details</summary>")
            lines.append(f"  {details}")
            lines.append("  </details>")
    lines.append("")
    lines.append("</details>")
    return "\n".join(lines)


def build_comment_body(
    reports: Iterable[ComparisonReport],
    footer: str = "",
    header: str = COMMENT_HEADER,
) -> str:
    """Combine the per-tool reports into one pull-request comment."""
    sections = [header]
    for report in reports:
        if not report.has_new_issues:
            continue
        if report.markdown.strip():
            sections.append(report.markdown.strip())
        else:
            sections.append(_issue_block(report))
    if footer:
        sections.append(footer)
    return "\n\n".join(sections)
