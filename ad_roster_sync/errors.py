"""
Exception taxonomy for AD Roster Sync.

Errors raised while processing one person are caught by the orchestrator and
recorded against that person; errors raised during shared setup (reading the
roster, provisioning OUs, binding to the directory) abort the run.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SourceReadError(SyncError):
    """Raised when the roster CSV cannot be read or lacks a mapped column."""
    pass


class DirectoryOperationError(SyncError):
    """Raised when a directory query or mutation fails."""
    pass


class DirectoryConnectionError(DirectoryOperationError):
    """Raised when the directory connection or bind fails."""
    pass


class MissingOrganizationalUnit(SyncError):
    """Raised when a person's target OU does not exist in the directory."""

    def __init__(self, ou_name: str):
        self.ou_name = ou_name
        super().__init__(f"Organizational unit not found: {ou_name!r}")


class NoUsernameAvailable(SyncError):
    """Raised when every username candidate for a person is already taken."""

    def __init__(self, given_name: str, surname: str, last_candidate: str = ''):
        self.given_name = given_name
        self.surname = surname
        self.last_candidate = last_candidate
        super().__init__(
            f"No username available for {given_name} {surname} "
            f"(last candidate tried: {last_candidate!r})"
        )
