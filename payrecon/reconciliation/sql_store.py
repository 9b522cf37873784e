"""SQLAlchemy Core implementation of the payment record store."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from payrecon.models import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)

metadata = MetaData()

payment_records = Table(
    "payment_records",
    metadata,
    Column("payment_intent_id", String(64), primary_key=True),
    Column("status", String(16), nullable=False, index=True),
    # Stored as text so amounts survive every backend exactly.
    Column("amount", String(40), nullable=True),
    Column("currency", String(3), nullable=True),
    Column("version", Integer, nullable=False, default=0),
    Column("provider", String(32), nullable=True),
    Column("provider_transaction_id", String(128), nullable=True, index=True),
    Column("last_event_id", String(128), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("completion_pending", Boolean, nullable=False, default=False, index=True),
    Column("propagation_attempts", Integer, nullable=False, default=0),
    Column("next_propagation_at", DateTime(timezone=True), nullable=True),
    Column("propagation_abandoned", Boolean, nullable=False, default=False),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(record: PaymentRecord) -> dict:
    return {
        "payment_intent_id": record.payment_intent_id,
        "status": record.status.value,
        "amount": str(record.amount) if record.amount is not None else None,
        "currency": record.currency,
        "version": record.version,
        "provider": record.provider,
        "provider_transaction_id": record.provider_transaction_id,
        "last_event_id": record.last_event_id,
        "completed_at": record.completed_at,
        "failure_reason": record.failure_reason,
        "completion_pending": record.completion_pending,
        "propagation_attempts": record.propagation_attempts,
        "next_propagation_at": record.next_propagation_at,
        "propagation_abandoned": record.propagation_abandoned,
        "metadata": dict(record.metadata),
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _from_row(row) -> PaymentRecord:
    row = row._mapping
    return PaymentRecord(
        payment_intent_id=row["payment_intent_id"],
        status=PaymentStatus(row["status"]),
        amount=Decimal(row["amount"]) if row["amount"] is not None else None,
        currency=row["currency"],
        version=row["version"],
        provider=row["provider"],
        provider_transaction_id=row["provider_transaction_id"],
        last_event_id=row["last_event_id"],
        completed_at=_utc(row["completed_at"]),
        failure_reason=row["failure_reason"],
        completion_pending=bool(row["completion_pending"]),
        propagation_attempts=row["propagation_attempts"],
        next_propagation_at=_utc(row["next_propagation_at"]),
        propagation_abandoned=bool(row["propagation_abandoned"]),
        metadata=dict(row["metadata"] or {}),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


class SqlAlchemyPaymentRecordStore:
    """Durable store; ``compare_and_set`` is a conditional UPDATE on version."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, create_tables: bool = True) -> "SqlAlchemyPaymentRecordStore":
        store = cls(create_engine(url, pool_pre_ping=True))
        if create_tables:
            store.create_tables()
        return store

    def create_tables(self) -> None:
        metadata.create_all(self.engine)

    def get(self, payment_intent_id: str) -> PaymentRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(payment_records).where(payment_records.c.payment_intent_id == payment_intent_id)
            ).first()
        return _from_row(row) if row is not None else None

    def insert(self, record: PaymentRecord) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(payment_records).values(**_to_row(record)))
        except IntegrityError:
            logger.debug("payment record %s already exists", record.payment_intent_id)
            return False
        return True

    def compare_and_set(self, record: PaymentRecord, expected_version: int) -> bool:
        values = _to_row(record)
        values.pop("payment_intent_id")
        with self.engine.begin() as conn:
            result = conn.execute(
                update(payment_records)
                .where(
                    payment_records.c.payment_intent_id == record.payment_intent_id,
                    payment_records.c.version == expected_version,
                )
                .values(**values)
            )
        return result.rowcount == 1

    def find_by_provider_transaction_id(self, provider, transaction_id) -> PaymentRecord | None:
        query = select(payment_records).where(payment_records.c.provider_transaction_id == transaction_id)
        if provider is not None:
            query = query.where(payment_records.c.provider == provider)
        with self.engine.connect() as conn:
            row = conn.execute(query.limit(1)).first()
        return _from_row(row) if row is not None else None

    def list_stale(self, statuses, updated_before, provider=None) -> list[PaymentRecord]:
        query = select(payment_records).where(
            payment_records.c.status.in_([status.value for status in statuses]),
            payment_records.c.updated_at < updated_before,
        )
        if provider is not None:
            query = query.where(payment_records.c.provider == provider)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(payment_records.c.updated_at)).all()
        return [_from_row(row) for row in rows]

    def pending_completions(self, due_at: datetime) -> list[PaymentRecord]:
        query = select(payment_records).where(
            and_(
                payment_records.c.completion_pending.is_(True),
                payment_records.c.propagation_abandoned.is_(False),
                or_(
                    payment_records.c.next_propagation_at.is_(None),
                    payment_records.c.next_propagation_at <= due_at,
                ),
            )
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(payment_records.c.completed_at)).all()
        return [_from_row(row) for row in rows]
