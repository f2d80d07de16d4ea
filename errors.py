"""Infrastructure faults raised by the store adapter and the charge engine.

Charge outcomes (success, insufficient balance, contention) are return
values, never exceptions. Everything here means the operation could not be
evaluated at all.

Error code ranges:
  2xxx: Account data
  9xxx: System
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 2xxx: Account data ---

class UninitializedAccountError(AppError):
    def __init__(self, account: str) -> None:
        super().__init__(2002, f"Balance is not initialized for account {account}", 500)
        self.account = account


class MalformedBalanceError(AppError):
    def __init__(self, account: str, raw: object) -> None:
        super().__init__(2003, f"Stored balance for account {account} is not an integer: {raw!r}", 500)
        self.account = account
        self.raw = raw


# --- 9xxx: System ---

class StoreUnavailableError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(9001, f"Balance store unavailable: {detail}", 503)
