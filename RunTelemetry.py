"""RunTelemetry.py -- Collect-then-report-once record of a single action run.

One ``RunTelemetry`` object is created by the runner, passed to each phase
and flushed exactly once when the process is about to exit.  Delivery
problems are logged and never change the outcome of the run.
"""

from __future__ import annotations

import http.client
import json
import logging
import time
import urllib.error
import urllib.request
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PhaseRecord:
    name: str
    started_at: str
    duration_seconds: float = 0.0
    outcome: str = "running"
    error: str = ""


@dataclass
class RunTelemetry:
    endpoint: str = ""
    timeout_seconds: int = 10
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    tools: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    phases: List[PhaseRecord] = field(default_factory=list)
    error: str = ""
    flushed: bool = False

    @contextmanager
    def phase(self, name: str) -> Iterator[PhaseRecord]:
        """Time the enclosed block and record how it ended."""
        record = PhaseRecord(name=name, started_at=datetime.now().isoformat())
        self.phases.append(record)
        start = time.monotonic()
        try:
            yield record
        except BaseException as exc:
            record.outcome = "error"
            record.error = str(exc)
            raise
        else:
            record.outcome = "success"
        finally:
            record.duration_seconds = round(time.monotonic() - start, 3)

    def record_error(self, exc: BaseException) -> None:
        self.error = f"{type(exc).__name__}: {exc}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("endpoint", "timeout_seconds", "flushed"):
            data.pop(key, None)
        data["outcome"] = "error" if self.error else "success"
        return data

    def flush(self) -> bool:
        """Report the record once; returns True if it was delivered remotely."""
        if self.flushed:
            return False
        self.flushed = True
        payload = self.to_dict()
        logger.info("Telemetry: %s", json.dumps(payload, ensure_ascii=False, default=str))
        if not self.endpoint:
            return False
        return self._send(payload)

    def _send(self, payload: Dict[str, Any]) -> bool:
        try:
            request = urllib.request.Request(
                url=self.endpoint,
                data=json.dumps(payload, default=str).encode("utf-8"),
                method="POST",
                headers={"Content-Type": "application/json"},
            )
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            logger.warning("Telemetry endpoint returned HTTP %s", exc.code)
            return False
        except (urllib.error.URLError, http.client.HTTPException, ValueError, OSError) as exc:
            logger.warning("Telemetry could not be delivered: %s", exc)
            return False
        return True


def invocation_metadata(env: Optional[Any] = None, **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if env is not None:
        data.update(
            {
                "repository": getattr(env, "repository", ""),
                "sha": getattr(env, "sha", ""),
                "ref_name": getattr(env, "ref_name", ""),
                "head_ref": getattr(env, "head_ref", ""),
            }
        )
    data.update(extra)
    return data
