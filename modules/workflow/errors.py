"""Exceptions raised at the repository boundary."""


class RepositoryError(Exception):
    """A project/template/audit store call failed."""


class StaleProjectError(RepositoryError):
    """The project changed since it was read (version mismatch)."""

    def __init__(self, project_id: str, expected_version: int):
        self.project_id = project_id
        self.expected_version = expected_version
        super().__init__(
            f"Project {project_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class MalformedProjectError(ValueError):
    """A stored project cannot be turned into a usable snapshot."""

    def __init__(self, project_id: str, reason: str):
        self.project_id = project_id
        self.reason = reason
        super().__init__(f"Malformed project {project_id}: {reason}")
