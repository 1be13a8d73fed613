# =============================================================================
# Exceptions — Failure Taxonomy for the Query Pipeline
# =============================================================================
#
# Two failure families are recoverable by design and never reach the user:
#   - BackendUnavailableError: search index or record store unreachable.
#     The retrieval engine advances to its next tier.
#   - GenerationError: the LLM call failed. The response generator switches
#     to the deterministic answer path.
#
# Adapters translate driver/SDK exceptions into these two types so the
# pipeline only ever has to catch one signal per concern.
# =============================================================================

from __future__ import annotations


class BackendUnavailableError(Exception):
    """A storage or search backend could not serve the request."""

    def __init__(self, backend: str, message: str = "") -> None:
        self.backend = backend
        super().__init__(f"{backend} unavailable: {message}" if message else backend)


# Kinds that are worth retrying with backoff. Auth failures never are.
_RETRYABLE_KINDS = {"timeout", "rate_limit", "network"}

GENERATION_ERROR_KINDS = {"auth", "timeout", "rate_limit", "network", "other"}


class GenerationError(Exception):
    """
    Classified failure from the generation capability.

    kind is one of: auth, timeout, rate_limit, network, other.
    """

    def __init__(self, kind: str, message: str = "") -> None:
        if kind not in GENERATION_ERROR_KINDS:
            kind = "other"
        self.kind = kind
        super().__init__(message or kind)

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS


class DuplicateApplicationError(ValueError):
    """An application identifier is already taken."""


class ImmutableFieldError(ValueError):
    """An update tried to change a field that is fixed after creation."""
