"""Per-entity staging tables holding the raw accounting payloads."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.database import Base, UTCDateTime
from ledgersync.entities import EntityType


class StagedRecordMixin:
    """
    Columns shared by every staging table.

    One row per external record, keyed by the platform's stable id.
    updated_date_utc orders competing versions (last write by cursor wins).
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    updated_date_utc: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.external_id} @ {self.updated_date_utc}>"


class StagedAccount(StagedRecordMixin, Base):
    __tablename__ = "stg_accounts"


class StagedTrackingCategory(StagedRecordMixin, Base):
    __tablename__ = "stg_tracking_categories"


class StagedContact(StagedRecordMixin, Base):
    __tablename__ = "stg_contacts"


class StagedItem(StagedRecordMixin, Base):
    __tablename__ = "stg_items"


class StagedInvoice(StagedRecordMixin, Base):
    __tablename__ = "stg_invoices"


class StagedPayment(StagedRecordMixin, Base):
    __tablename__ = "stg_payments"


class StagedCreditNote(StagedRecordMixin, Base):
    __tablename__ = "stg_credit_notes"


class StagedBankAccount(StagedRecordMixin, Base):
    __tablename__ = "stg_bank_accounts"


class StagedBankTransaction(StagedRecordMixin, Base):
    __tablename__ = "stg_bank_transactions"


class StagedManualJournal(StagedRecordMixin, Base):
    __tablename__ = "stg_manual_journals"


STAGING_MODELS: dict[EntityType, type[StagedRecordMixin]] = {
    EntityType.ACCOUNTS: StagedAccount,
    EntityType.TRACKING_CATEGORIES: StagedTrackingCategory,
    EntityType.CONTACTS: StagedContact,
    EntityType.ITEMS: StagedItem,
    EntityType.INVOICES: StagedInvoice,
    EntityType.PAYMENTS: StagedPayment,
    EntityType.CREDIT_NOTES: StagedCreditNote,
    EntityType.BANK_ACCOUNTS: StagedBankAccount,
    EntityType.BANK_TRANSACTIONS: StagedBankTransaction,
    EntityType.MANUAL_JOURNALS: StagedManualJournal,
}
