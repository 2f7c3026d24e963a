class CirculationError(Exception):
    """Base class for errors raised by the circulation core."""
    retryable = False


class ValidationError(CirculationError, ValueError):
    """Missing or malformed input; raised before any transaction opens."""


# Precondition failures
class NoActiveSubscription(CirculationError):
    """The member has no subscription covering today."""


class Unavailable(CirculationError):
    """No copy of the title is available."""


class DuplicateLoan(CirculationError):
    """The member already holds an open loan for this title."""


class MemberInactive(CirculationError):
    """The member is not ACTIVE."""


class DuplicateMember(CirculationError):
    """A member with this email already exists."""


class InvalidSignature(CirculationError):
    """Gateway signature does not match the order and payment ids."""


class PaymentStateError(CirculationError):
    """The payment is in a state that does not allow the transition."""


class PenaltyNotPayable(CirculationError):
    """The loan is still open, carries no penalty, or was already settled."""


class RequestStateError(CirculationError):
    """The request has already been decided."""


class TitleNotFound(CirculationError, LookupError):
    pass


class LoanNotFound(CirculationError, LookupError):
    pass


class MemberNotFound(CirculationError, LookupError):
    pass


class PaymentNotFound(CirculationError, LookupError):
    pass


class RequestNotFound(CirculationError, LookupError):
    pass


class ContentionError(CirculationError):
    """Lock wait timed out; the transaction was rolled back and may be retried."""
    retryable = True


class GatewayError(CirculationError):
    """The payment gateway could not create an order."""
