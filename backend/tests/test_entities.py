"""Tests for the entity catalogue."""

import pytest

from ledgersync.entities import (
    ALL_ENTITY_TYPES,
    ENTITY_CONFIGS,
    EntityType,
    order_by_priority,
    parse_entity_types,
)
from ledgersync.exceptions import InvalidEntityType


class TestEntityCatalogue:
    """Tests for entity ordering and parsing."""

    def test_dependencies_sync_first(self):
        position = {entity_type: i for i, entity_type in enumerate(ALL_ENTITY_TYPES)}

        for config in ENTITY_CONFIGS.values():
            for dependency in config.dependencies:
                assert position[dependency] < position[config.entity_type]

    def test_order_by_priority_dedupes(self):
        ordered = order_by_priority(["invoices", "accounts", "invoices", EntityType.CONTACTS])

        assert ordered == [EntityType.ACCOUNTS, EntityType.CONTACTS, EntityType.INVOICES]

    def test_parse_reports_every_invalid_name(self):
        with pytest.raises(InvalidEntityType) as exc_info:
            parse_entity_types(["contacts", "widgets", "gadgets"])

        assert exc_info.value.values == ["widgets", "gadgets"]
