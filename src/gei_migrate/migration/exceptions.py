"""Migration engine exceptions."""


class MigrationError(Exception):
    """Base exception for migration engine errors."""

    pass


class RepositoryNotFoundError(MigrationError, KeyError):
    """The repository is not tracked in the state store."""

    def __init__(self, name: str):
        super().__init__(f'Repository {name} not found')
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class RetryNotAllowedError(MigrationError):
    """The repository is not in a state that can be retried."""

    def __init__(self, name: str, status: str):
        """Initialize retry error.

        Args:
            name: Repository name
            status: Current status of the repository
        """
        super().__init__(
            f'Repository {name} is {status}; only failed migrations can be retried'
        )
        self.name = name
        self.status = status
