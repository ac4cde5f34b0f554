"""
Exception hierarchy for the harvest pipeline.

Setup errors abort a run (non-zero exit, run marked failed). Source errors
are handled inside the harvester: throttles and transient errors are retried,
other source errors stop the current scope only.
"""


class CollectorError(Exception):
    """Base class for pipeline errors"""


class CollectorSetupError(CollectorError):
    """Fatal setup failure: the run cannot start or continue"""


class RunLockHeldError(CollectorSetupError):
    """Another run of the same kind holds a fresh lock"""

    def __init__(self, kind: str, holder: dict):
        self.kind = kind
        self.holder = holder or {}
        super().__init__(
            f"Another {kind} run is active (holder {self.holder.get('holder', '?')}, "
            f"started {self.holder.get('ts', '?')}, mode {self.holder.get('mode', '?')})"
        )


class MissingCredentialError(CollectorSetupError):
    """A required credential is not configured"""


class SessionUnavailableError(CollectorSetupError):
    """The browser session could not be established"""


class TargetNotFoundError(CollectorSetupError):
    """A single-target run named an unknown target"""


class SourceError(CollectorError):
    """Non-retryable error response from a listing source"""

    def __init__(self, message: str, status: int = None):
        self.status = status
        super().__init__(message)


class ThrottledError(SourceError):
    """The source signalled throttling (challenge redirect or too-many-requests)"""


class TransientSourceError(CollectorError):
    """Network or session hiccup that may succeed on retry"""


class ScoringCommitError(CollectorError):
    """The atomic score commit failed; nothing was written"""
