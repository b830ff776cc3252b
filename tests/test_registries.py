import pytest

from backfill.v1.core.exceptions import UnresolvableMigrationError
from backfill.v1.core.registries import MigrationRegistry, Registry, migration_registry
from backfill.v1.migrations.units import ExtractUrl, ExtractUrlRange


class MockUnit:
    async def perform(self, storage, record_id) -> None:
        return None


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry
    assert "nonexistent" not in registry

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze_blocks_registration():
    """Test that a frozen registry rejects new implementations."""
    registry = Registry[str]("Test")
    registry.register("before", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after", "value")

    assert registry.get("before") == "value"


def test_migration_registry_resolve():
    """Test that resolve returns the registered unit instance."""
    registry = MigrationRegistry()
    unit = MockUnit()
    registry.register("Mock", unit)

    assert registry.resolve("Mock") is unit


def test_migration_registry_unknown_name_is_unresolvable():
    """Test that unknown names raise the terminal resolution error."""
    registry = MigrationRegistry()

    with pytest.raises(UnresolvableMigrationError) as exc_info:
        registry.resolve("DoesNotExist")

    assert exc_info.value.name == "DoesNotExist"
    assert exc_info.value.error_code == "UNRESOLVABLE_MIGRATION"
    assert exc_info.value.status_code == 404


def test_global_registry_has_webhook_units():
    """Test that importing registry_init registers the shipped units."""
    from backfill.v1.migrations import registry_init  # noqa: F401

    assert isinstance(migration_registry.get("ExtractUrl"), ExtractUrl)
    assert isinstance(migration_registry.get("ExtractUrlRange"), ExtractUrlRange)
