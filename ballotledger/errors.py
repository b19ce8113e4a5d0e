class BallotLedgerError(Exception):
    code = "error"
    http_status = 400
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict[str, object]:
        return {"error": self.message, "code": self.code, "retryable": self.retryable}


class NotFound(BallotLedgerError):
    code = "not_found"
    http_status = 404


class ValidationError(BallotLedgerError):
    code = "validation_error"
    http_status = 400


class InvalidTransition(BallotLedgerError):
    code = "invalid_transition"
    http_status = 409


class ElectionNotOpen(BallotLedgerError):
    code = "election_not_open"
    http_status = 409


class ElectionNotClosed(BallotLedgerError):
    code = "election_not_closed"
    http_status = 409


class NotEligible(BallotLedgerError):
    code = "not_eligible"
    http_status = 403


class DuplicateWallet(BallotLedgerError):
    code = "duplicate_wallet"
    http_status = 409


class AlreadyCommitted(BallotLedgerError):
    code = "already_committed"
    http_status = 409


class AlreadyRevealed(BallotLedgerError):
    code = "already_revealed"
    http_status = 409


class InvalidReveal(BallotLedgerError):
    code = "invalid_reveal"
    http_status = 422


class UnknownCandidate(BallotLedgerError):
    code = "unknown_candidate"
    http_status = 422


class LedgerError(BallotLedgerError):
    code = "ledger_error"
    http_status = 502
    retryable = True


class LedgerSubmissionFailed(LedgerError):
    code = "ledger_submission_failed"
    http_status = 502


class LedgerUnavailable(LedgerError):
    code = "ledger_unavailable"
    http_status = 503


class LedgerNotFound(LedgerError):
    """The ledger answered, but it has no such transaction."""

    code = "ledger_not_found"
    http_status = 404
    retryable = False


class RevealTooLate(BallotLedgerError):
    """The tally is already published; a first reveal can no longer count."""

    code = "reveal_too_late"
    http_status = 409


class ServiceUnavailable(BallotLedgerError):
    code = "service_unavailable"
    http_status = 503
    retryable = True
