"""
Coin ledger backed by Postgres.

Balances live in `user_wallets(user_id, coins)`; every movement is recorded in
`coin_transactions(user_id, reference, kind, amount, previous_balance,
new_balance)` with a unique key on (user_id, reference, kind). Deductions and
credits run in one transaction with the wallet row locked FOR UPDATE, and a
repeat of the same (user, reference, kind) returns the original result, so the
retry decorator can never double-charge.
"""

from callhub.calls.collaborators import DeductResult
from callhub.calls.errors import InsufficientFunds, LedgerError, LedgerUnavailable, UserNotFound
from callhub.db.helpers import DatabaseError, execute_query, fetch_one, fetch_val, with_db_retry
from callhub.db.pool import db_pool
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CALL_CHARGE = "call_charge"
CALL_EARNING = "call_earning"


class PostgresBalanceLedger:
    async def get_balance(self, user_id: str) -> int:
        try:
            return await self._get_balance(user_id)
        except DatabaseError as e:
            raise LedgerUnavailable(str(e)) from e

    async def atomic_deduct(
        self, user_id: str, amount: int, reason_ref: str, *, allow_partial: bool = False
    ) -> DeductResult:
        try:
            return await self._deduct(user_id, amount, reason_ref, allow_partial)
        except DatabaseError as e:
            raise LedgerUnavailable(str(e)) from e

    async def credit(self, user_id: str, amount: int, reason_ref: str) -> DeductResult:
        try:
            return await self._credit(user_id, amount, reason_ref)
        except DatabaseError as e:
            raise LedgerUnavailable(str(e)) from e

    @with_db_retry(max_retries=3, base_delay=0.1, passthrough=(LedgerError,))
    async def _get_balance(self, user_id: str) -> int:
        balance = await fetch_val("SELECT coins FROM user_wallets WHERE user_id = %s", (user_id,))
        if balance is None:
            raise UserNotFound(user_id)
        return int(balance)

    @with_db_retry(max_retries=3, base_delay=0.1, passthrough=(LedgerError,))
    async def _deduct(
        self, user_id: str, amount: int, reason_ref: str, allow_partial: bool
    ) -> DeductResult:
        async with db_pool.transaction() as conn:
            previous = await self._existing(conn, user_id, reason_ref, CALL_CHARGE)
            if previous is not None:
                logger.info("Charge already recorded", user_id=user_id, reference=reason_ref)
                return previous

            row = await fetch_one(
                "SELECT coins FROM user_wallets WHERE user_id = %s FOR UPDATE",
                (user_id,),
                connection=conn,
            )
            if row is None:
                raise UserNotFound(user_id)

            balance = int(row["coins"])
            if balance < amount and not allow_partial:
                raise InsufficientFunds(user_id, balance, amount)

            deducted = min(amount, balance)
            new_balance = balance - deducted
            await self._apply(conn, user_id, reason_ref, CALL_CHARGE, -deducted, balance, new_balance)

        logger.info(
            "Coins deducted",
            user_id=user_id,
            reference=reason_ref,
            requested=amount,
            deducted=deducted,
            previous_balance=balance,
            new_balance=new_balance,
        )
        return DeductResult(new_balance=new_balance, deducted=deducted)

    @with_db_retry(max_retries=3, base_delay=0.1, passthrough=(LedgerError,))
    async def _credit(self, user_id: str, amount: int, reason_ref: str) -> DeductResult:
        async with db_pool.transaction() as conn:
            previous = await self._existing(conn, user_id, reason_ref, CALL_EARNING)
            if previous is not None:
                return previous

            row = await fetch_one(
                "SELECT coins FROM user_wallets WHERE user_id = %s FOR UPDATE",
                (user_id,),
                connection=conn,
            )
            if row is None:
                raise UserNotFound(user_id)

            balance = int(row["coins"])
            new_balance = balance + amount
            await self._apply(conn, user_id, reason_ref, CALL_EARNING, amount, balance, new_balance)

        logger.info("Coins credited", user_id=user_id, reference=reason_ref, amount=amount)
        return DeductResult(new_balance=new_balance, deducted=-amount)

    async def _existing(self, conn, user_id: str, reference: str, kind: str) -> DeductResult | None:
        row = await fetch_one(
            """
            SELECT amount, new_balance FROM coin_transactions
            WHERE user_id = %s AND reference = %s AND kind = %s
            """,
            (user_id, reference, kind),
            connection=conn,
        )
        if row is None:
            return None
        return DeductResult(new_balance=int(row["new_balance"]), deducted=-int(row["amount"]))

    async def _apply(
        self,
        conn,
        user_id: str,
        reference: str,
        kind: str,
        delta: int,
        previous_balance: int,
        new_balance: int,
    ) -> None:
        await execute_query(
            "UPDATE user_wallets SET coins = %s, updated_at = NOW() WHERE user_id = %s",
            (new_balance, user_id),
            connection=conn,
        )
        await execute_query(
            """
            INSERT INTO coin_transactions (
                user_id, reference, kind, amount, previous_balance, new_balance, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, NOW())
            """,
            (user_id, reference, kind, delta, previous_balance, new_balance),
            connection=conn,
        )
