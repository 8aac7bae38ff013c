"""
Directory service interface.

This module defines the abstract capability interface the sync core consumes,
along with the typed records and filter criteria passed across it. Concrete
clients (see ad_roster_sync.ldap_client) must implement every abstract method and
raise DirectoryOperationError on failure.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountFilter:
    """
    Structured account query: every ``equals`` pair must match and every
    ``present`` field must have a value.
    """

    equals: Tuple[Tuple[str, str], ...] = ()
    present: Tuple[str, ...] = ()

    @classmethod
    def where(cls, **criteria: str) -> 'AccountFilter':
        return cls(equals=tuple(criteria.items()))

    def matches(self, values: Mapping[str, str]) -> bool:
        """Evaluate the filter against an in-memory record."""
        for name, expected in self.equals:
            if values.get(name) != expected:
                return False
        return all(values.get(name) for name in self.present)


@dataclass(frozen=True)
class DirectoryAccount:
    """Snapshot of one directory user account."""

    dn: str
    account_name: str
    unique_id: str = ''
    enabled: bool = True
    expires: Optional[datetime] = None
    organizational_unit: str = ''
    fields: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NewAccount:
    """Everything needed to create an account."""

    given_name: str
    surname: str
    account_name: str
    principal_name: str
    password: str
    ou_dn: str
    unique_id_field: str
    unique_id: str
    title: str = ''
    department: str = ''
    office: str = ''
    enabled: bool = True
    change_password_at_logon: bool = True


@dataclass(frozen=True)
class AccountUpdate:
    """
    Synced fields written to an existing account.

    Fields left as None are not touched; ``target_ou_dn`` moves the account.
    """

    account_name: str
    principal_name: str
    title: Optional[str] = None
    department: Optional[str] = None
    office: Optional[str] = None
    target_ou_dn: Optional[str] = None


class DirectoryClient(ABC):
    """
    Abstract capability interface over the directory service.

    All methods raise DirectoryOperationError when the underlying call fails.
    """

    @abstractmethod
    def find_accounts(self, criteria: AccountFilter,
                      fields: Sequence[str] = ()) -> List[DirectoryAccount]:
        """Return accounts matching the criteria, with ``fields`` projected."""
        pass

    @abstractmethod
    def account_name_owner(self, account_name: str) -> Optional[str]:
        """
        Return the unique ID of the account holding ``account_name``.

        Returns '' when the owner has no unique ID and None when the name is free.
        """
        pass

    def account_exists(self, account_name: str) -> bool:
        """Check whether any account holds ``account_name``."""
        return self.account_name_owner(account_name) is not None

    @abstractmethod
    def find_organizational_unit(self, name: str) -> Optional[str]:
        """Return the DN of the OU called ``name``, or None."""
        pass

    @abstractmethod
    def create_organizational_unit(self, name: str, protected: bool = False) -> str:
        """Create an OU and return its DN."""
        pass

    @abstractmethod
    def create_account(self, account: NewAccount) -> str:
        """Create an account and return its DN."""
        pass

    @abstractmethod
    def update_account(self, dn: str, update: AccountUpdate) -> str:
        """Apply an update, moving the account if requested. Returns the final DN."""
        pass

    @abstractmethod
    def set_account_expiration(self, dn: str, when: datetime) -> None:
        pass

    @abstractmethod
    def disable_account(self, dn: str) -> None:
        pass

    def close(self) -> None:
        """Release any connection held by the client."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def summarize_accounts(accounts: Sequence[DirectoryAccount]) -> Dict[str, int]:
    """Count enabled and disabled accounts in a snapshot."""
    enabled = sum(1 for account in accounts if account.enabled)
    return {'total': len(accounts), 'enabled': enabled, 'disabled': len(accounts) - enabled}
