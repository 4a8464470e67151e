"""
Wallet ledger: per-user coin pools and the transaction log behind them.

An account holds three independent pools (wallet coins, redeemed loyalty
coins, reward points). Balances on the account document are authoritative;
the `wallet_transaction` collection is the audit trail. Every change is a
single conditional `$inc`, so two concurrent debits can never overdraw a
pool.

When a change carries a reference (for example ``debit:<order>:balance``)
the ledger entry is stored under that reference before the balance moves.
Replaying the same change finds the entry already present and does nothing.
If the balance change itself fails the entry is removed again, so the entry
exists only for changes that were applied (or are being applied).
"""
import logging
from typing import Any, Dict, List, Optional

from database import Storage, serialize
from errors import InsufficientBalanceError, ValidationError
from schemas import WalletAccount, WalletPool, WalletTransaction
from settings import Settings

logger = logging.getLogger(__name__)

ACCOUNTS = "wallet_account"
TRANSACTIONS = "wallet_transaction"

# reason codes
CHECKOUT_DEBIT = "checkout_debit"
ORDER_CANCEL_REFUND = "order_cancel_refund"
FIRST_PURCHASE_REWARD = "first_purchase_reward"
POINTS_CONVERSION = "points_conversion"
TOP_UP = "top_up"

POOL_LABELS = {
    WalletPool.BALANCE: "wallet coins",
    WalletPool.REDEEMED: "redeemed coins",
    WalletPool.REWARD_POINTS: "reward points",
}


def _pool(pool) -> WalletPool:
    return pool if isinstance(pool, WalletPool) else WalletPool(pool)


def _amount(value: float) -> float:
    return round(float(value), 2)


class WalletLedger:
    def __init__(self, storage: Storage, settings: Settings):
        self.storage = storage
        self.settings = settings

    def get_balance(self, user_id: str) -> Dict[str, Any]:
        account = self.storage.find_document(ACCOUNTS, {"user_id": user_id})
        if account is None:
            return WalletAccount(user_id=user_id).model_dump()
        view = serialize(account)
        view.pop("id", None)
        return view

    def available(self, user_id: str, pool) -> float:
        return float(self.get_balance(user_id).get(_pool(pool).value, 0))

    def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = self.storage.get_documents(
            TRANSACTIONS, {"user_id": user_id}, sort=[("created_at", -1)], limit=limit
        )
        return [serialize(d) for d in docs]

    def _record(self, user_id, pool: WalletPool, amount, reason_code, related_order_id, reference, note=None) -> bool:
        """Append a ledger entry; keyed entries are written at most once."""
        entry = WalletTransaction(
            user_id=user_id,
            pool=pool,
            amount=amount,
            reason_code=reason_code,
            related_order_id=related_order_id,
            note=note,
        ).model_dump()
        if reference is None:
            self.storage.create_document(TRANSACTIONS, entry)
            return True
        return self.storage.create_once(TRANSACTIONS, reference, entry)

    def _release(self, reference: Optional[str]) -> None:
        """Drop a keyed entry whose balance change did not happen, so a retry can apply it."""
        if reference is not None:
            self.storage.delete_document(TRANSACTIONS, reference)

    def redeem(
        self,
        user_id: str,
        amount: float,
        reason_code: str,
        related_order_id: Optional[str] = None,
        pool=WalletPool.BALANCE,
        reference: Optional[str] = None,
    ) -> bool:
        """Debit a pool. Returns False when `reference` was already applied."""
        pool = _pool(pool)
        amount = _amount(amount)
        if amount <= 0:
            raise ValidationError("Debit amount must be positive", amount=amount)

        if reference is not None and not self._record(user_id, pool, -amount, reason_code, related_order_id, reference):
            logger.info("Wallet debit %s already applied", reference)
            return False

        try:
            updated = self.storage.take(
                ACCOUNTS,
                {"user_id": user_id},
                pool.value,
                amount,
                also_inc={"lifetime_spent": amount},
            )
        except Exception:
            self._release(reference)
            raise
        if updated is None:
            self._release(reference)
            raise InsufficientBalanceError(POOL_LABELS[pool], amount, self.available(user_id, pool))
        if reference is None:
            self._record(user_id, pool, -amount, reason_code, related_order_id, None)
        logger.info("Debited %s %s from %s (%s)", amount, pool.value, user_id, reason_code)
        return True

    def credit(
        self,
        user_id: str,
        amount: float,
        reason_code: str,
        related_order_id: Optional[str] = None,
        pool=WalletPool.BALANCE,
        reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> bool:
        """Credit a pool, opening the account if needed. False on a replayed reference."""
        pool = _pool(pool)
        amount = _amount(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive", amount=amount)

        if reference is not None and not self._record(
            user_id, pool, amount, reason_code, related_order_id, reference, note
        ):
            logger.info("Wallet credit %s already applied", reference)
            return False

        inc = {pool.value: amount, "lifetime_earned": amount}
        try:
            self.storage.give(ACCOUNTS, {"user_id": user_id}, inc, set_on_insert=self._opening_fields(inc))
        except Exception:
            self._release(reference)
            raise
        if reference is None:
            self._record(user_id, pool, amount, reason_code, related_order_id, None, note)
        logger.info("Credited %s %s to %s (%s)", amount, pool.value, user_id, reason_code)
        return True

    @staticmethod
    def _opening_fields(inc: Dict[str, float]) -> Dict[str, Any]:
        fields = WalletAccount(user_id="").model_dump()
        fields.pop("user_id")
        for key in inc:
            fields.pop(key, None)
        return fields

    def process_first_purchase_reward(self, user_id: str, order_id: str) -> bool:
        """Credit the one-time first purchase reward. True only on the call that paid it."""
        reward = self.settings.first_purchase_reward
        if reward <= 0:
            return False
        return self.credit(
            user_id,
            reward,
            FIRST_PURCHASE_REWARD,
            related_order_id=order_id,
            reference=f"first-purchase:{user_id}",
        )

    def convert_points(self, user_id: str, points: int) -> Dict[str, Any]:
        """Turn reward points into redeemed coins at the configured rate."""
        per_coin = self.settings.points_per_coin
        if points <= 0 or points % per_coin:
            raise ValidationError(f"Points must be a positive multiple of {per_coin}", points=points)
        coins = points / per_coin
        self.redeem(user_id, points, POINTS_CONVERSION, pool=WalletPool.REWARD_POINTS)
        self.credit(user_id, coins, POINTS_CONVERSION, pool=WalletPool.REDEEMED)
        return self.get_balance(user_id)
