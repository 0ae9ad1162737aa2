"""Catalogue of syncable accounting entity types."""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from ledgersync.exceptions import InvalidEntityType


class EntityType(StrEnum):
    ACCOUNTS = "accounts"
    TRACKING_CATEGORIES = "tracking_categories"
    CONTACTS = "contacts"
    ITEMS = "items"
    INVOICES = "invoices"
    PAYMENTS = "payments"
    CREDIT_NOTES = "credit_notes"
    BANK_ACCOUNTS = "bank_accounts"
    BANK_TRANSACTIONS = "bank_transactions"
    MANUAL_JOURNALS = "manual_journals"


@dataclass(frozen=True)
class EntityConfig:
    """
    How one entity type is fetched and staged.

    Lower priority numbers sync first. Reference data (accounts, tracking
    categories) precedes contacts and items, which precede transactional
    records, so downstream joins by code always find their targets.
    """

    entity_type: EntityType
    endpoint: str
    collection_key: str
    id_field: str
    priority: int
    page_size: int = 100
    paginated: bool = False
    where: str | None = None
    dependencies: tuple[EntityType, ...] = ()

    @property
    def table_name(self) -> str:
        return f"stg_{self.entity_type.value}"


ENTITY_CONFIGS: dict[EntityType, EntityConfig] = {
    config.entity_type: config
    for config in (
        EntityConfig(
            EntityType.ACCOUNTS,
            endpoint="Accounts",
            collection_key="Accounts",
            id_field="AccountID",
            priority=1,
        ),
        EntityConfig(
            EntityType.TRACKING_CATEGORIES,
            endpoint="TrackingCategories",
            collection_key="TrackingCategories",
            id_field="TrackingCategoryID",
            priority=2,
        ),
        EntityConfig(
            EntityType.CONTACTS,
            endpoint="Contacts",
            collection_key="Contacts",
            id_field="ContactID",
            priority=3,
            paginated=True,
        ),
        EntityConfig(
            EntityType.ITEMS,
            endpoint="Items",
            collection_key="Items",
            id_field="ItemID",
            priority=4,
            dependencies=(EntityType.ACCOUNTS,),
        ),
        EntityConfig(
            EntityType.INVOICES,
            endpoint="Invoices",
            collection_key="Invoices",
            id_field="InvoiceID",
            priority=5,
            page_size=100,
            paginated=True,
            dependencies=(EntityType.ACCOUNTS, EntityType.CONTACTS, EntityType.ITEMS),
        ),
        EntityConfig(
            EntityType.PAYMENTS,
            endpoint="Payments",
            collection_key="Payments",
            id_field="PaymentID",
            priority=6,
            paginated=True,
            dependencies=(EntityType.INVOICES,),
        ),
        EntityConfig(
            EntityType.CREDIT_NOTES,
            endpoint="CreditNotes",
            collection_key="CreditNotes",
            id_field="CreditNoteID",
            priority=7,
            paginated=True,
            dependencies=(EntityType.ACCOUNTS, EntityType.CONTACTS),
        ),
        EntityConfig(
            EntityType.BANK_ACCOUNTS,
            endpoint="Accounts",
            collection_key="Accounts",
            id_field="AccountID",
            priority=8,
            where='Type=="BANK"',
        ),
        EntityConfig(
            EntityType.BANK_TRANSACTIONS,
            endpoint="BankTransactions",
            collection_key="BankTransactions",
            id_field="BankTransactionID",
            priority=9,
            paginated=True,
            dependencies=(EntityType.BANK_ACCOUNTS, EntityType.CONTACTS),
        ),
        EntityConfig(
            EntityType.MANUAL_JOURNALS,
            endpoint="ManualJournals",
            collection_key="ManualJournals",
            id_field="ManualJournalID",
            priority=10,
            paginated=True,
            dependencies=(EntityType.ACCOUNTS,),
        ),
    )
}


def get_entity_config(entity_type: EntityType | str) -> EntityConfig:
    """Look up the config for an entity type, rejecting unknown names."""
    return ENTITY_CONFIGS[parse_entity_types([entity_type])[0]]


def parse_entity_types(values: Iterable[EntityType | str]) -> list[EntityType]:
    """Convert raw names to EntityType members, preserving order."""
    parsed: list[EntityType] = []
    invalid: list[str] = []
    for value in values:
        try:
            parsed.append(EntityType(value))
        except ValueError:
            invalid.append(str(value))
    if invalid:
        raise InvalidEntityType(invalid)
    return parsed


def order_by_priority(entity_types: Iterable[EntityType | str]) -> list[EntityType]:
    """De-duplicate and sort entity types by their fixed sync priority."""
    unique = set(parse_entity_types(entity_types))
    return sorted(unique, key=lambda entity_type: ENTITY_CONFIGS[entity_type].priority)


ALL_ENTITY_TYPES: list[EntityType] = order_by_priority(ENTITY_CONFIGS)
