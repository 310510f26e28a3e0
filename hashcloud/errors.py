class HashCloudError(Exception):
    pass


class InvalidAmountError(HashCloudError):
    pass


class InsufficientBalanceError(HashCloudError):
    pass


class BelowMinimumWithdrawalError(HashCloudError):
    pass


class InvalidTransactionHashError(HashCloudError):
    pass


class InvalidAddressError(HashCloudError):
    pass


class AddressAlreadyRegisteredError(HashCloudError):
    pass


class UnknownPlanError(HashCloudError):
    pass


class UnknownUserError(HashCloudError):
    pass


class TransactionNotFoundError(HashCloudError):
    pass


class AlreadySettledError(HashCloudError):
    pass


class ConflictingWriteError(HashCloudError):
    pass


class TransientWriteError(HashCloudError):
    """Raised when a write keeps conflicting after every retry; safe to retry later."""


class RecordDecodeError(HashCloudError):
    pass
