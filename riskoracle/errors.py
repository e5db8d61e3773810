"""
Error taxonomy for the risk oracle.

Off-chain errors surface to the caller of the quote path. Program errors
abort the enclosing ledger transaction; their numeric code is what the
ledger reports.
"""


class RiskOracleError(Exception):
    """Base class. Never raised directly."""

    def __init__(self, message: str):
        if not isinstance(message, str) or not message:
            raise ValueError("error message must be a non-empty string")
        super().__init__(message)
        self.message = message


# -------------------------
# Off-chain
# -------------------------

class FeedValidationError(RiskOracleError, ValueError):
    """Feed definition is empty, ill-typed or otherwise unhashable."""


class TaskExecutionError(RiskOracleError):
    """An oracle could not run a feed's pipeline (source down, bad JSON, ...)."""


class NetworkError(RiskOracleError):
    """Oracle unreachable, timed out or answered with a server error."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class ConsensusError(RiskOracleError):
    """Too few samples, or samples spread beyond the tolerance."""

    def __init__(self, message: str, samples=None):
        super().__init__(message)
        self.samples = list(samples or [])


# -------------------------
# On-chain
# -------------------------

class ProgramError(RiskOracleError):
    code = 0

    def __str__(self):
        return f"{type(self).__name__}({self.code}): {self.message}"


class MalformedQuoteError(ProgramError):
    code = 1


class UnauthorizedSignerError(ProgramError):
    code = 2


class FeedMismatchError(ProgramError):
    code = 3


class StaleQuoteError(ProgramError):
    code = 4


class SignatureVerificationError(ProgramError):
    code = 5


class AccountAccessError(ProgramError):
    code = 6
