"""ActionEnvironment.py -- Inputs, outputs and environment of the hosting CI platform.

The action runs as a GitHub Actions step.  Inputs arrive as ``INPUT_<NAME>``
environment variables, outputs and exported variables are appended to the
files named by ``GITHUB_OUTPUT`` and ``GITHUB_ENV``, and the pull-request
context is read from the event payload at ``GITHUB_EVENT_PATH``.

Classes
-------
ActionInputs
    Typed view over the action inputs.
ActionEnvironment
    Repository/ref metadata plus output and env-file writers.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import yaml

from CodeSecErrors import MalformedReportError, MissingInputError

logger = logging.getLogger(__name__)


def _input(environ: Mapping[str, str], name: str, default: str = "") -> str:
    """Read one action input the way the runner exposes it."""
    key = "INPUT_" + name.replace(" ", "_").upper()
    return environ.get(key, default).strip()


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
@dataclass
class ActionInputs:
    target: str = ""
    tools: str = "sca"
    jar: str = ""
    classes: str = ""
    classpath: str = ""
    sources: str = ""
    eval_indirect_dependencies: bool = True
    token: str = ""
    footer: str = ""
    fix_suggestions: str = ""
    config: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ActionInputs":
        env = os.environ if environ is None else environ
        return cls(
            target=_input(env, "target"),
            tools=_input(env, "tools") or "sca",
            jar=_input(env, "jar"),
            classes=_input(env, "classes"),
            classpath=_input(env, "classpath"),
            sources=_input(env, "sources"),
            eval_indirect_dependencies=_input(env, "eval-indirect-dependencies").lower() != "false",
            token=_input(env, "token"),
            footer=_input(env, "footer"),
            fix_suggestions=_input(env, "fix-suggestions"),
            config=_input(env, "config"),
        )

    def tool_list(self) -> List[str]:
        """Requested tools, lower-cased, in input order."""
        return [t.strip() for t in self.tools.lower().split(",") if t.strip()]

    @property
    def sast_classes(self) -> str:
        return self.classes or self.jar


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
@dataclass
class ActionEnvironment:
    repository: str
    owner: str
    name: str
    ref_name: str = ""
    head_ref: str = ""
    ref: str = ""
    sha: str = ""
    server_url: str = "https://github.com"
    api_url: str = "https://api.github.com"
    env_file: str = ""
    output_file: str = ""
    event_path: str = ""
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ActionEnvironment":
        env = os.environ if environ is None else environ
        repository = env.get("GITHUB_REPOSITORY", "")
        if not repository:
            raise MissingInputError("GITHUB_REPOSITORY")
        owner, name = split_at_first_slash(repository)
        return cls(
            repository=repository,
            owner=owner,
            name=name,
            ref_name=env.get("GITHUB_REF_NAME", ""),
            head_ref=env.get("GITHUB_HEAD_REF", ""),
            ref=env.get("GITHUB_REF", ""),
            sha=env.get("GITHUB_SHA", ""),
            server_url=env.get("GITHUB_SERVER_URL", "https://github.com"),
            api_url=env.get("GITHUB_API_URL", "https://api.github.com"),
            env_file=env.get("GITHUB_ENV", ""),
            output_file=env.get("GITHUB_OUTPUT", ""),
            event_path=env.get("GITHUB_EVENT_PATH", ""),
            debug=env.get("RUNNER_DEBUG", "") == "1",
        )

    def current_branch(self) -> str:
        """Head ref inside a pull request, else the ref name of the push."""
        if self.head_ref:
            return self.head_ref
        if not self.ref_name:
            raise MissingInputError("GITHUB_REF_NAME")
        return self.ref_name

    def pull_request_number(self) -> Optional[int]:
        """Number of the triggering pull request, or None outside a PR."""
        if self.event_path and Path(self.event_path).exists():
            try:
                with open(self.event_path, "r", encoding="utf-8") as fh:
                    event = json.load(fh)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Could not read event payload %s: %s", self.event_path, exc)
                event = {}
            number = (event.get("pull_request") or {}).get("number")
            if number is not None:
                return int(number)
        # refs/pull/<n>/merge
        parts = self.ref.split("/")
        if len(parts) >= 3 and parts[0] == "refs" and parts[1] == "pull" and parts[2].isdigit():
            return int(parts[2])
        return None

    def set_output(self, name: str, value: Any) -> None:
        text = _format_value(value)
        logger.info("Setting output %s=%s", name, text)
        if not self.output_file:
            logger.debug("GITHUB_OUTPUT not set; output %s only logged", name)
            return
        _append_file_command(self.output_file, name, text)

    def export_variable(self, name: str, value: Any) -> None:
        """Make a variable visible to later steps of the same job."""
        if not self.env_file:
            raise MissingInputError("GITHUB_ENV")
        os.environ[name] = _format_value(value)
        _append_file_command(self.env_file, name, _format_value(value))


def split_at_first_slash(value: Optional[str]) -> tuple[str, str]:
    if not value:
        return "", ""
    owner, _, rest = value.partition("/")
    return owner, rest.split("/", 1)[0]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _append_file_command(path: str, name: str, value: str) -> None:
    with open(path, "a", encoding="utf-8") as fh:
        if "\n" in value:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            fh.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        else:
            fh.write(f"{name}={value}\n")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(defaults: Dict[str, Any], path: Optional[str | Path]) -> Dict[str, Any]:
    """Overlay an optional YAML file on top of the built-in defaults."""
    cfg = copy.deepcopy(defaults)
    if not path:
        return cfg
    cfg_path = Path(path)
    if not cfg_path.exists():
        logger.info("Config %s not found. Using defaults.", cfg_path)
        return cfg
    try:
        with open(cfg_path, "r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise MalformedReportError(str(cfg_path), f"invalid YAML ({exc})") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise MalformedReportError(str(cfg_path), f"not readable ({exc})") from exc
    overrides = loaded.get("codesec", loaded) if isinstance(loaded, dict) else None
    if not isinstance(overrides, dict):
        logger.warning("Ignoring config %s: expected a mapping", cfg_path)
        return cfg
    return _deep_merge(cfg, overrides)


# ---------------------------------------------------------------------------
# Log groups
# ---------------------------------------------------------------------------
@contextmanager
def log_group(title: str) -> Iterator[None]:
    """Fold the enclosed log output under ``title`` in the Actions UI."""
    for handler in logging.getLogger().handlers:
        handler.flush()
    sys.stdout.write(f"::group::{title}\n")
    sys.stdout.flush()
    try:
        yield
    finally:
        for handler in logging.getLogger().handlers:
            handler.flush()
        sys.stdout.write("::endgroup::\n")
        sys.stdout.flush()
