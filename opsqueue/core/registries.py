from typing import Any, Generic, Protocol, TypeVar

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
                "registry is frozen"
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

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._implementations


class JobHandler(Protocol):
    """Protocol for handlers that execute one claimed job."""

    async def handle(
        self,
        session: Any,  # AsyncSession
        job: Any,  # opsqueue.jobs.models.Job
    ) -> dict[str, Any] | None:
        """
        Execute a claimed job.

        Args:
            session: Database session whose transaction also marks the job
                completed, so domain writes and completion commit together
            job: The claimed job row (args, attempt, max_attempts)

        Returns:
            Optional summary used for logging
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry mapping job kinds to handlers, built once per process."""

    def __init__(self):
        super().__init__("Job")
