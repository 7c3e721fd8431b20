"""Domain-specific exceptions

Every business-rule violation raised by the engine is one of these. They all
derive from ValueError so callers that already guard engine calls with
``except ValueError`` keep working.
"""


class LoanLedgerError(ValueError):
    """Base exception for the loan and ledger engine"""

    pass


class ValidationError(LoanLedgerError):
    """Malformed input: non-positive amount, missing identity, bad plan"""

    pass


class InvalidAmount(ValidationError):
    """Amount is not positive or is in the wrong currency"""

    pass


class NotFound(LoanLedgerError):
    """Requested record does not exist"""

    pass


class WalletNotFound(NotFound):
    pass


class LoanNotFound(NotFound):
    pass


class InstallmentNotFound(NotFound):
    pass


class PlanNotFound(NotFound):
    pass


class InvoiceNotFound(NotFound):
    pass


class Forbidden(LoanLedgerError):
    """Caller is not the actor required for this operation"""

    pass


class InvalidStateTransition(LoanLedgerError):
    """Operation is not legal from the loan's current status"""

    pass


class DuplicateState(InvalidStateTransition):
    """Operation would repeat an outcome that is already recorded"""

    pass


class ConcurrentModification(InvalidStateTransition):
    """Record changed between read and write"""

    pass


class InsufficientFunds(LoanLedgerError):
    """Debit exceeds the wallet balance"""

    pass
