"""SarifResults.py -- Load SARIF result files and log what they contain."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from ActionEnvironment import log_group
from CodeSecErrors import MalformedReportError

logger = logging.getLogger(__name__)


def load_sarif(path: str | Path) -> Dict[str, Any]:
    """Parse a SARIF log from disk.

    Raises
    ------
    MalformedReportError
        If the file is not UTF-8 JSON, has no ``runs`` list, or holds runs
        or results that are not objects.
    """
    p = Path(path)
    try:
        with open(p, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedReportError(str(p), f"invalid JSON ({exc})") from exc
    if not isinstance(data, dict) or not isinstance(data.get("runs"), list):
        raise MalformedReportError(str(p), "expected an object with a 'runs' list")
    for idx, run in enumerate(data["runs"]):
        if not isinstance(run, dict):
            raise MalformedReportError(str(p), f"run {idx} is not an object")
        results = run.get("results")
        if results is None:
            continue
        if not isinstance(results, list) or not all(isinstance(r, dict) for r in results):
            raise MalformedReportError(str(p), f"results of run {idx} must be a list of objects")
    return data


def run_results(run: Dict[str, Any]) -> List[Dict[str, Any]]:
    results = run.get("results")
    return results if isinstance(results, list) else []


def driver_name(run: Dict[str, Any]) -> str:
    return ((run.get("tool") or {}).get("driver") or {}).get("name", "unknown tool")


def print_results(tool: str, path: str | Path) -> None:
    """Log a summary line plus one JSON line per finding for every run."""
    label = tool.upper()
    log = load_sarif(path)
    with log_group(f"Results for {label}"):
        found_something = False
        for run in log["runs"]:
            results = run_results(run)
            if not results:
                continue
            found_something = True
            logger.info("Found %d results using %s", len(results), driver_name(run))
            for vuln in results:
                logger.info("%s", json.dumps(vuln, ensure_ascii=False))
        if not found_something:
            logger.info("No %s issues were found", label)
