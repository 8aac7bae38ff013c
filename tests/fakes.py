"""
In-memory DirectoryClient used by the sync tests.
"""

import dataclasses
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional, Sequence

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_roster_sync.directory import (
    AccountFilter,
    AccountUpdate,
    DirectoryAccount,
    DirectoryClient,
    NewAccount,
)
from ad_roster_sync.errors import DirectoryOperationError

BASE_DN = 'DC=example,DC=com'


class FakeDirectoryClient(DirectoryClient):
    """
    Keeps accounts and OUs in dictionaries and records every call.

    ``fail_accounts`` holds account names whose mutations raise
    DirectoryOperationError; ``fail_ou_create`` makes OU creation fail.
    """

    def __init__(self, unique_id_field: str = 'EmployeeID', ou_field: str = 'OU'):
        self.unique_id_field = unique_id_field
        self.ou_field = ou_field
        self.accounts: Dict[str, DirectoryAccount] = {}
        self.ous: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.expirations: Dict[str, datetime] = {}
        self.fail_accounts = set()
        self.fail_ou_create = False
        self.closed = False

    # Test setup helpers

    def add_ou(self, name: str) -> str:
        dn = f"OU={name},{BASE_DN}"
        self.ous[name] = dn
        return dn

    def add_account(self, unique_id: str, account_name: str, given_name: str = '',
                    surname: str = '', ou: str = 'Staff', enabled: bool = True, **fields) -> DirectoryAccount:
        ou_dn = self.ous.get(ou) or self.add_ou(ou)
        values = {
            self.unique_id_field: unique_id,
            'GivenName': given_name,
            'Surname': surname,
            self.ou_field: ou,
        }
        values.update(fields)
        account = DirectoryAccount(
            dn=f"CN={given_name} {surname} {unique_id},{ou_dn}",
            account_name=account_name,
            unique_id=unique_id,
            enabled=enabled,
            organizational_unit=ou,
            fields=values,
        )
        self.accounts[account.dn] = account
        return account

    def by_name(self, account_name: str) -> Optional[DirectoryAccount]:
        for account in self.accounts.values():
            if account.account_name == account_name:
                return account
        return None

    def by_id(self, unique_id: str) -> Optional[DirectoryAccount]:
        for account in self.accounts.values():
            if account.unique_id == unique_id:
                return account
        return None

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    # DirectoryClient

    def find_accounts(self, criteria: AccountFilter, fields: Sequence[str] = ()) -> List[DirectoryAccount]:
        self.calls.append(('find_accounts', criteria))
        wanted = set(fields) | {self.unique_id_field}
        found = []
        for account in self.accounts.values():
            if criteria.matches(account.fields):
                projected = {name: account.fields.get(name, '') for name in wanted}
                found.append(DirectoryAccount(
                    dn=account.dn,
                    account_name=account.account_name,
                    unique_id=account.unique_id,
                    enabled=account.enabled,
                    expires=account.expires,
                    organizational_unit=account.organizational_unit,
                    fields=projected,
                ))
        return found

    def account_name_owner(self, account_name: str) -> Optional[str]:
        self.calls.append(('account_name_owner', account_name))
        account = self.by_name(account_name)
        return None if account is None else account.unique_id

    def find_organizational_unit(self, name: str) -> Optional[str]:
        self.calls.append(('find_organizational_unit', name))
        return self.ous.get(name)

    def create_organizational_unit(self, name: str, protected: bool = False) -> str:
        self.calls.append(('create_organizational_unit', name, protected))
        if self.fail_ou_create:
            raise DirectoryOperationError(f"Failed to create OU {name}: insufficientAccessRights")
        if name in self.ous:
            raise DirectoryOperationError(f"Failed to create OU {name}: entryAlreadyExists")
        return self.add_ou(name)

    def create_account(self, account: NewAccount) -> str:
        self.calls.append(('create_account', account))
        if account.account_name in self.fail_accounts:
            raise DirectoryOperationError(f"Failed to create account {account.account_name}: unwillingToPerform")
        if self.by_name(account.account_name):
            raise DirectoryOperationError(f"Failed to create account {account.account_name}: entryAlreadyExists")
        ou_name = next(name for name, dn in self.ous.items() if dn == account.ou_dn)
        created = self.add_account(
            account.unique_id, account.account_name, account.given_name, account.surname,
            ou=ou_name, enabled=account.enabled,
            Title=account.title, Department=account.department, Office=account.office,
        )
        return created.dn

    def update_account(self, dn: str, update: AccountUpdate) -> str:
        self.calls.append(('update_account', dn, update))
        current = self.accounts[dn]
        if current.account_name in self.fail_accounts:
            raise DirectoryOperationError(f"Failed to update account {current.account_name}: unwillingToPerform")

        values = dict(current.fields)
        for field_name, value in (('Title', update.title), ('Department', update.department),
                                  ('Office', update.office)):
            if value is not None:
                values[field_name] = value

        new_dn = dn
        ou_name = current.organizational_unit
        if update.target_ou_dn and not dn.endswith(update.target_ou_dn):
            ou_name = next(name for name, ou_dn in self.ous.items() if ou_dn == update.target_ou_dn)
            new_dn = f"{dn.split(',')[0]},{update.target_ou_dn}"
            values[self.ou_field] = ou_name

        del self.accounts[dn]
        self.accounts[new_dn] = DirectoryAccount(
            dn=new_dn,
            account_name=update.account_name,
            unique_id=current.unique_id,
            enabled=current.enabled,
            expires=current.expires,
            organizational_unit=ou_name,
            fields=values,
        )
        return new_dn

    def set_account_expiration(self, dn: str, when: datetime) -> None:
        self.calls.append(('set_account_expiration', dn, when))
        if self.accounts[dn].account_name in self.fail_accounts:
            raise DirectoryOperationError(f"Failed to set expiration on {dn}")
        self.expirations[dn] = when
        self._replace(dn, expires=when)

    def disable_account(self, dn: str) -> None:
        self.calls.append(('disable_account', dn))
        self._replace(dn, enabled=False)

    def close(self) -> None:
        self.closed = True

    def _replace(self, dn: str, **changes):
        self.accounts[dn] = dataclasses.replace(self.accounts[dn], **changes)
