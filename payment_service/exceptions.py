class PaymentSessionError(Exception):
    """Base class for payment session errors."""


class InvalidTransition(PaymentSessionError):
    """Raised when a state change is not allowed from the session's current status."""

    def __init__(self, session_id: str, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"session {session_id}: cannot move from {current} to {target}")


class AddressAllocationError(PaymentSessionError):
    """Raised when no deposit address could be allocated for a new session."""


class DetectionError(PaymentSessionError):
    """Raised when the source-ledger node returns an error or an unusable answer."""


class DetectionUnavailable(DetectionError):
    """Raised when the source-ledger node cannot be reached (timeout, connection, 5xx)."""


class SettlementError(PaymentSessionError):
    """Raised when the settlement provider call fails."""


class ProviderResponseError(SettlementError):
    """Raised when a provider response lacks the order id or deposit address."""


class UnsupportedActionError(SettlementError):
    """Raised when a target action variant cannot be dispatched to the provider."""

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"target action '{action_type}' cannot be dispatched to the settlement provider")
