"""contextvars-based TransactionContextPort.

Each asyncio task (and thread) sees the transaction bound in its own
context, so concurrent requests never share a Transaction.
"""

from contextvars import ContextVar, Token

from harvestpy.core.models import Transaction

_current_transaction: ContextVar[Transaction | None] = ContextVar(
    "harvestpy_transaction", default=None
)


class ContextVarTransactionContext:
    """Tracks the active transaction in a ContextVar."""

    def get_transaction(self) -> Transaction | None:
        transaction = _current_transaction.get()
        if transaction is not None and not transaction.is_active:
            return None
        return transaction

    def bind(self, transaction: Transaction) -> Token[Transaction | None]:
        return _current_transaction.set(transaction)

    def unbind(self, token: Token[Transaction | None]) -> None:
        _current_transaction.reset(token)
