from typing import Any, Generic, Protocol, TypeVar

from backfill.v1.core.exceptions import UnresolvableMigrationError

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Migration Registry - background migration units
class MigrationUnit(Protocol):
    """Protocol for background migration units."""

    async def perform(self, storage: Any, *arguments: Any) -> None:
        """
        Migrate the record(s) identified by ``arguments``.

        Args:
            storage: MigrationStorage, the only handle a unit gets on the database
            arguments: Primitive identifiers captured at scheduling time

        Must be idempotent and must return quietly when the record is gone.
        """
        ...


class MigrationRegistry(Registry[MigrationUnit]):
    """Registry mapping migration names to unit instances."""

    def __init__(self):
        super().__init__("Migration")

    def resolve(self, name: str) -> MigrationUnit:
        """Resolve a migration unit, raising a terminal error for unknown names."""
        try:
            return self.get(name)
        except KeyError:
            raise UnresolvableMigrationError(name) from None


# Global registry instance (singleton)
migration_registry = MigrationRegistry()
