"""Exception hierarchy for docspace-ops.

Selection, usage and prerequisite errors abort an invocation. Transition and
probe errors are recorded against a single service and never stop a batch.
"""


class OrchestratorError(Exception):
    """Base class for every error raised by docspace-ops."""


class ConfigError(OrchestratorError):
    """Invalid configuration file or environment override."""


class TopologyError(OrchestratorError):
    """The service graph is malformed (cycle or dangling dependency)."""


class UnknownServiceError(OrchestratorError):
    def __init__(self, token, valid=None):
        self.token = token
        self.valid = list(valid or [])
        message = f"Unknown service or group: '{token}'"
        if self.valid:
            message += f". Valid: {', '.join(self.valid)}"
        super().__init__(message)


class UsageError(OrchestratorError):
    """The requested combination of options is not supported."""


class PrerequisiteError(OrchestratorError):
    """Missing privilege, binary or on-disk structure."""


class RuntimeUnavailableError(OrchestratorError):
    """The Docker daemon cannot be reached."""


class RuntimeCommandError(OrchestratorError):
    def __init__(self, cmd, returncode=None, stderr=""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = self.stderr or f"exit code {returncode}"
        super().__init__(f"Command failed: {' '.join(self.cmd)} ({detail})")


class RuntimeTimeoutError(RuntimeCommandError):
    def __init__(self, cmd, timeout):
        self.timeout = timeout
        super().__init__(cmd, None, f"timed out after {timeout}s")


class TransitionTimeoutError(OrchestratorError):
    def __init__(self, service, action, timeout):
        self.service = service
        self.action = action
        self.timeout = timeout
        super().__init__(f"{service} did not {action} within {timeout}s")


class InvalidTransition(OrchestratorError):
    def __init__(self, service, current, target):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(f"{service}: illegal transition {current} -> {target}")


class ProbeFailure(OrchestratorError):
    """A probe could not complete (timeout, runtime error, missing tool)."""

    def __init__(self, probe, reason):
        self.probe = probe
        self.reason = reason
        super().__init__(f"{probe}: {reason}")


class ProbeNegative(OrchestratorError):
    """A probe completed and reported the target as unhealthy."""

    def __init__(self, probe, reason):
        self.probe = probe
        self.reason = reason
        super().__init__(f"{probe}: {reason}")
