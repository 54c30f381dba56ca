"""Exception hierarchy for shadowload.

Request-level failures never show up here: executors record them as metric
events. These exceptions cover what stops a run before or after it happens.
"""


class ShadowLoadError(Exception):
    """Base class for every error raised by shadowload."""


class ConfigError(ShadowLoadError):
    """Invalid configuration, reported before any virtual user starts."""


class ThresholdParseError(ConfigError):
    """A threshold expression could not be parsed."""


class ThresholdEvaluationError(ShadowLoadError):
    """A threshold could not be evaluated, e.g. its route has no samples."""

    def __init__(self, message: str, results=None):
        super().__init__(message)
        self.results = results or []
