"""Probe result types shared by the health evaluator and storage checks."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import OrchestratorError, ProbeFailure, ProbeNegative

log = logging.getLogger(__name__)


class ProbeStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    CRITICAL = "critical"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class ProbeResult:
    name: str
    status: ProbeStatus
    message: str = ""
    target: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def failed(self):
        return self.status in (ProbeStatus.CRITICAL, ProbeStatus.ERROR)


def threshold_status(percent, warn, critical):
    if percent >= critical:
        return ProbeStatus.CRITICAL
    if percent >= warn:
        return ProbeStatus.WARN
    return ProbeStatus.PASS


def run_probe(name, func, *args, target=None, **kwargs):
    """Run one probe and turn whatever happens into a ProbeResult.

    ``func`` returns a ProbeResult (or a message for a plain pass), raises
    ProbeNegative when the target is bad and ProbeFailure (or any runtime
    error) when the probe itself could not complete.
    """
    try:
        outcome = func(*args, **kwargs)
    except ProbeNegative as e:
        log.debug("Probe %s negative: %s", name, e.reason)
        return ProbeResult(name, ProbeStatus.CRITICAL, e.reason, target)
    except ProbeFailure as e:
        log.debug("Probe %s failed: %s", name, e.reason)
        return ProbeResult(name, ProbeStatus.ERROR, e.reason, target)
    except OrchestratorError as e:
        log.debug("Probe %s failed: %s", name, e)
        return ProbeResult(name, ProbeStatus.ERROR, str(e), target)
    if isinstance(outcome, ProbeResult):
        return outcome
    return ProbeResult(name, ProbeStatus.PASS, outcome or "", target)
