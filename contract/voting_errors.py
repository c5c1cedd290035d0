"""
Error taxonomy for the token voting engine.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with. ``fatal`` errors abort the whole call and are
logged loudly by the host; the rest are ordinary rejections.
"""


class VotingError(Exception):
    code = "voting_error"
    status = 400
    fatal = False

    def to_dict(self) -> dict:
        return {"success": False, "error": str(self), "code": self.code}


class NotInitialized(VotingError):
    code = "not_initialized"
    status = 409


class AlreadyInitialized(VotingError):
    code = "already_initialized"
    status = 409


class InvalidSetup(VotingError):
    code = "invalid_setup"


class InvalidAmount(VotingError):
    code = "invalid_amount"


class InvalidCandidate(VotingError):
    code = "invalid_candidate"


class InsufficientSupply(VotingError):
    code = "insufficient_supply"


class InsufficientBudget(VotingError):
    code = "insufficient_budget"


class InsufficientFunds(VotingError):
    """The caller's value account cannot cover the attached payment."""
    code = "insufficient_funds"
    status = 402


class TransferFailure(VotingError):
    code = "transfer_failure"
    status = 500
    fatal = True


class InvariantViolation(VotingError):
    """Ledger corruption. Must never happen; never clamped or wrapped."""
    code = "invariant_violation"
    status = 500
    fatal = True


def status_for(code: str) -> int:
    """HTTP status for an error code produced by ``VotingError.to_dict``."""
    pending = [VotingError]
    while pending:
        cls = pending.pop()
        if cls.code == code:
            return cls.status
        pending.extend(cls.__subclasses__())
    return 400
