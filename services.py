import asyncio
from typing import Optional
import structlog

from errors import MalformedBalanceError, UninitializedAccountError
from models import ChargeAttempt, ChargeResult, ChargeStatus
from repositories import BalanceStore, balance_key

# Configure structured logging
logger = structlog.get_logger()


def parse_balance(account: str, raw: Optional[str]) -> int:
    """Parse a stored balance. The caller decides what absence means."""
    if raw is None:
        raise UninitializedAccountError(account)
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise MalformedBalanceError(account, raw) from e


class ChargeService:
    """Reset and charge account balances held in a BalanceStore.

    No state is shared between calls and nothing is locked locally: two
    protocol charges against the same account are serialized by the store's
    conditional commit. Contention is reported as a TransactionError result
    and never retried here; retry policy belongs to the caller.
    """

    def __init__(self, store: BalanceStore, default_balance: int = 100, timeout: Optional[float] = 5.0):
        self.store = store
        self.default_balance = default_balance
        self.timeout = timeout

    async def reset(self, account: str) -> None:
        """Overwrite the balance with the default. Not linearized against in-flight charges."""
        await self.store.set(balance_key(account), self.default_balance)
        logger.info("Account reset", account=account, balance=self.default_balance)

    async def original_charge(self, account: str, amount: int) -> ChargeResult:
        """Read, compare, then write unconditionally.

        Two concurrent calls can both see a sufficient balance and both be
        authorized. Kept as the baseline the protocol is measured against.
        """
        self._check_amount(amount)
        key = balance_key(account)
        attempt = ChargeAttempt(account=account, amount=amount)

        attempt.observed_balance = parse_balance(account, await self.store.get(key))
        if attempt.observed_balance >= amount:
            await self.store.set(key, attempt.observed_balance - amount)
            remaining = parse_balance(account, await self.store.get(key))
            attempt.succeed(remaining)
            logger.info("Successfully charged account", account=account, charges=amount)
        else:
            attempt.reject(ChargeStatus.insufficient_balance)
            logger.info(
                "Insufficient balance on account",
                account=account,
                remaining_balance=attempt.remaining_balance,
                requested_amount=amount
            )

        return attempt.to_result()

    async def transaction_charge(self, account: str, amount: int) -> ChargeResult:
        """Charge using watch, read, decide, conditional commit."""
        self._check_amount(amount)
        attempt = ChargeAttempt(account=account, amount=amount)

        try:
            await asyncio.wait_for(self._try_to_charge(attempt), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Charge timed out before commit",
                account=account,
                timeout=self.timeout,
                observed_balance=attempt.observed_balance
            )
            attempt.reject(ChargeStatus.transaction_error)

        if attempt.status == ChargeStatus.success:
            logger.info(
                "Successfully charged account",
                account=account,
                charges=amount,
                remaining_balance=attempt.remaining_balance
            )
        elif attempt.status == ChargeStatus.insufficient_balance:
            logger.info(
                "Insufficient balance on account",
                account=account,
                remaining_balance=attempt.remaining_balance,
                requested_amount=amount
            )
        else:
            logger.info("Transaction error while trying to charge", account=account, requested_amount=amount)

        return attempt.to_result()

    async def _try_to_charge(self, attempt: ChargeAttempt) -> None:
        key = balance_key(attempt.account)

        async with self.store.transaction() as tx:
            await tx.watch(key)

            raw = await tx.get(key)
            # An absent balance reads as zero here, unlike original_charge
            attempt.observed_balance = 0 if raw is None else parse_balance(attempt.account, raw)

            if attempt.observed_balance < attempt.amount:
                await tx.discard()
                attempt.reject(ChargeStatus.insufficient_balance)
                return

            remaining = attempt.observed_balance - attempt.amount
            tx.queue_write(key, remaining)
            results = await tx.commit()

        if results is None:
            attempt.reject(ChargeStatus.transaction_error)
        else:
            # The commit proves nobody wrote the key since our read
            attempt.succeed(remaining)

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Charge amount must not be negative, got {amount}")


# Factory function for dependency injection
def get_charge_service(store: BalanceStore, default_balance: int = 100, timeout: Optional[float] = 5.0) -> ChargeService:
    return ChargeService(store, default_balance=default_balance, timeout=timeout)
