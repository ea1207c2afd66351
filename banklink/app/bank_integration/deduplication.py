"""
Transaction Deduplication Module

Idempotent upsert of canonical transactions keyed by
(provider kind, provider transaction id). Re-observing a transaction updates
its mutable fields in place; creation metadata (id, owner, connection,
created_at) is never touched.
"""

from typing import Dict, Iterable, List, Set, Tuple

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from banklink.app.models import BankConnection, ProviderKind, Transaction
from .schemas import CanonicalTransaction

MUTABLE_FIELDS = (
    'amount',
    'currency',
    'description',
    'merchant_name',
    'category',
    'kind',
    'transaction_date',
    'posted_date',
    'pending',
)

BATCH_SIZE = 500

DIALECT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class TransactionDeduplicator:
    """
    Insert-or-update transactions without creating duplicates.

    On PostgreSQL and SQLite the write is a single
    ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent writers converge on one
    row per external id without locking. Other dialects fall back to an ORM
    lookup followed by insert or update.
    """

    @staticmethod
    def existing_ids(db: Session, provider_kind: ProviderKind, provider_transaction_ids: Iterable[str]) -> Set[str]:
        ids = list(provider_transaction_ids)
        found = set()
        for start in range(0, len(ids), BATCH_SIZE):
            chunk = ids[start:start + BATCH_SIZE]
            rows = db.query(Transaction.provider_transaction_id).filter(
                Transaction.provider_kind == provider_kind,
                Transaction.provider_transaction_id.in_(chunk)
            ).all()
            found.update(row[0] for row in rows)
        return found

    @staticmethod
    def upsert_transactions(
        db: Session,
        connection: BankConnection,
        transactions: List[CanonicalTransaction]
    ) -> Tuple[int, int]:
        """
        Upsert transactions for a connection. Does not commit.

        Args:
            db: Database session
            connection: Owning bank connection
            transactions: Canonical transactions from the provider

        Returns:
            (distinct transactions upserted, rows newly created)

        Example:
            >>> upserted, created = TransactionDeduplicator.upsert_transactions(db, conn, txs)
            >>> # running it again with the same txs returns (upserted, 0)
        """
        # Last observation wins if a provider repeats an id within one response
        by_id: Dict[str, CanonicalTransaction] = {}
        for tx in transactions:
            by_id[tx.provider_transaction_id] = tx

        if not by_id:
            return 0, 0

        existing = TransactionDeduplicator.existing_ids(db, connection.provider_kind, by_id.keys())

        insert = DIALECT_INSERTS.get(db.get_bind().dialect.name)
        if insert is not None:
            TransactionDeduplicator._upsert_on_conflict(db, insert, connection, list(by_id.values()))
        else:
            TransactionDeduplicator._upsert_orm(db, connection, list(by_id.values()))

        return len(by_id), len(set(by_id) - existing)

    @staticmethod
    def _row(connection: BankConnection, tx: CanonicalTransaction) -> Dict:
        row = {
            'user_id': connection.user_id,
            'bank_connection_id': connection.id,
            'provider_kind': connection.provider_kind,
            'provider_transaction_id': tx.provider_transaction_id,
        }
        row.update({field: getattr(tx, field) for field in MUTABLE_FIELDS})
        return row

    @staticmethod
    def _upsert_on_conflict(db: Session, insert, connection: BankConnection, transactions: List[CanonicalTransaction]):
        for start in range(0, len(transactions), BATCH_SIZE):
            chunk = transactions[start:start + BATCH_SIZE]
            stmt = insert(Transaction).values([TransactionDeduplicator._row(connection, tx) for tx in chunk])

            updates = {field: stmt.excluded[field] for field in MUTABLE_FIELDS}
            updates['updated_at'] = func.now()

            stmt = stmt.on_conflict_do_update(
                index_elements=['provider_kind', 'provider_transaction_id'],
                set_=updates
            )
            db.execute(stmt)

    @staticmethod
    def _upsert_orm(db: Session, connection: BankConnection, transactions: List[CanonicalTransaction]):
        ids = [tx.provider_transaction_id for tx in transactions]
        rows = {
            row.provider_transaction_id: row
            for row in db.query(Transaction).filter(
                Transaction.provider_kind == connection.provider_kind,
                Transaction.provider_transaction_id.in_(ids)
            ).all()
        }

        for tx in transactions:
            row = rows.get(tx.provider_transaction_id)
            if row is None:
                row = Transaction(**TransactionDeduplicator._row(connection, tx))
                db.add(row)
            else:
                for field in MUTABLE_FIELDS:
                    setattr(row, field, getattr(tx, field))

        db.flush()
