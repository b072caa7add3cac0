"""
Exception types shared across ranking, classification and tuning.

Configuration problems are raised immediately to the caller. Numeric edge
cases (zero frequencies, single-score normalization, empty rankings) are never
errors and are handled where they occur.
"""


class ConfigurationError(ValueError):
    """A caller-supplied setting violates a contract of the engine."""


class EmptyCorpusError(ConfigurationError):
    """A corpus was built from zero documents (average length is undefined)."""


class UnknownScorerError(ConfigurationError):
    """A scoring model identifier is not registered."""


class MalformedParametersError(ConfigurationError):
    """A persisted parameter stream is truncated or inconsistent."""
