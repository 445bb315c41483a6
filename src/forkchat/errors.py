"""Error taxonomy for the gateway, the main chain, branches and merges."""

from __future__ import annotations

# Codes the completion service uses when a previous_response_id is unknown
CONTINUATION_ERROR_CODES = {"previous_response_not_found", "chain_broken"}
CONTINUATION_ERROR_MARKERS = (
    "previous_response_not_found",
    "previous response with id",
    "continuation not found",
)


class ForkchatError(Exception):
    """Base class for forkchat errors."""


# ----------------------------- Gateway ---------------------------------


class GatewayError(ForkchatError):
    """A completion call failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class ContinuationNotFound(GatewayError):
    """The service no longer knows the continuation token we sent."""


class RateLimited(GatewayError):
    pass


class Unauthorized(GatewayError):
    pass


class Malformed(GatewayError):
    """The request was rejected as invalid."""


class GatewayTimeout(GatewayError):
    pass


class UnknownGatewayError(GatewayError):
    pass


def is_continuation_broken(error: BaseException) -> bool:
    """True when an error means the server-side chain head is gone."""
    if isinstance(error, ContinuationNotFound):
        return True
    if isinstance(error, GatewayError) and error.code in CONTINUATION_ERROR_CODES:
        return True
    text = str(error).lower()
    return any(marker in text for marker in CONTINUATION_ERROR_MARKERS)


# ----------------------------- Chain -----------------------------------


class ChainError(ForkchatError):
    """Main-chain operation failed."""


class ChainResetRetryFailed(ChainError):
    """The chain was reset and the fresh retry failed as well."""

    def __init__(self, cause: BaseException):
        super().__init__(f"Chain reset; please retry ({cause})")
        self.cause = cause


class ChainResetDuringOperation(ChainError):
    """A queued operation was discarded because the chain was reset."""


# ----------------------------- Branches --------------------------------


class BranchError(ForkchatError):
    pass


class BranchBusyError(BranchError):
    """A send is already in flight for this branch."""


class BranchNotFoundError(BranchError):
    pass


class ForkError(BranchError):
    """The requested fork point cannot seed a branch."""


# ----------------------------- Merge -----------------------------------


class MergeError(ForkchatError):
    """Folding a branch into the main chain failed."""

    timed_out = False


class SummarizationTimeout(MergeError):
    timed_out = True
