class JudgeError(Exception):
    pass


class InvalidSubmission(JudgeError, ValueError):
    """Raised before execution starts; the caller should not retry."""


class Overloaded(JudgeError):
    """No worker slot became free within the queuing deadline."""

    def __init__(self, message: str, retry_after_s: int = 1):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class ConfigurationError(JudgeError, ValueError):
    pass


class SandboxFailure(JudgeError):
    """Host-side fault while creating, running or tearing down an isolated unit."""


class DockerUnavailableError(SandboxFailure):
    pass


class TeardownError(SandboxFailure):
    pass
