"""Exception hierarchy for the delivery pipeline.

Expected business outcomes (suppression, send limits, cooldowns, provider
failures) are returned as values and never raised.  The exceptions below
cover programming and configuration errors that callers should not
silently absorb.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Settings or provider credentials are missing or invalid."""


class InvalidTransition(PipelineError):
    """A status change that the state machine does not allow."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity}: illegal transition {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


class TemplateVariableError(PipelineError):
    """Raised in strict mode when a ``{{placeholder}}`` has no value."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__("unresolved template variables: " + ", ".join(missing))
        self.missing = missing


class NotFoundError(PipelineError):
    """A referenced campaign, rule, template or test does not exist."""


__all__ = [
    "ConfigurationError",
    "InvalidTransition",
    "NotFoundError",
    "PipelineError",
    "TemplateVariableError",
]
