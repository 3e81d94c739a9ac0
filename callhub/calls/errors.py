class CallCoreError(Exception):
    """Base class for call core failures."""


class LockBackendUnavailable(CallCoreError):
    """The lock backend could not be reached; callers must fail closed."""


class DuplicateCallError(CallCoreError):
    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} already exists")
        self.call_id = call_id


class LedgerError(CallCoreError):
    """Base class for balance ledger failures."""


class InsufficientFunds(LedgerError):
    def __init__(self, user_id: str, balance: int, requested: int):
        super().__init__(f"User {user_id} has {balance} coins, {requested} requested")
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class UserNotFound(LedgerError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class LedgerUnavailable(LedgerError):
    """The ledger backend failed; nothing was charged."""
