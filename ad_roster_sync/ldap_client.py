"""
Active Directory client built on ldap3.

This module implements the DirectoryClient interface against Active Directory:
connecting with retry and TLS support, paged account searches, organizational
unit lookup and creation, and account create / update / expire / disable.
"""

import logging
import ssl
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Optional, Sequence

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn, parse_dn

from ad_roster_sync.directory import (
    AccountFilter,
    AccountUpdate,
    DirectoryAccount,
    DirectoryClient,
    NewAccount,
)
from ad_roster_sync.errors import DirectoryConnectionError, DirectoryOperationError
from ad_roster_sync.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call

logger = logging.getLogger(__name__)

# Canonical field name -> AD attribute
DEFAULT_ATTRIBUTE_MAP = {
    'GivenName': 'givenName',
    'Surname': 'sn',
    'EmployeeID': 'employeeID',
    'EmployeeNumber': 'employeeNumber',
    'Title': 'title',
    'Department': 'department',
    'Office': 'physicalDeliveryOfficeName',
    'Company': 'company',
    'DisplayName': 'displayName',
    'Mail': 'mail',
    'SamAccountName': 'sAMAccountName',
    'UserPrincipalName': 'userPrincipalName',
}

USER_FILTER = '(&(objectCategory=person)(objectClass=user))'
OU_FILTER = '(objectClass=organizationalUnit)'

UAC_ACCOUNTDISABLE = 0x2
UAC_NORMAL_ACCOUNT = 0x200

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
FILETIME_NEVER = (0, 0x7FFFFFFFFFFFFFFF)


def datetime_to_filetime(when: datetime) -> int:
    """Convert a datetime to a Windows FILETIME (100ns intervals since 1601). Naive values are UTC."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = when - FILETIME_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**7 + delta.microseconds * 10


def filetime_to_datetime(value: Any) -> Optional[datetime]:
    """Convert an accountExpires value to a datetime; 'never' becomes None."""
    if value is None or value == '' or value == []:
        return None
    if isinstance(value, list):
        value = value[0]
    if isinstance(value, datetime):
        if value.year in (1601, 9999):
            return None
        return value
    value = int(value)
    if value in FILETIME_NEVER:
        return None
    return FILETIME_EPOCH + timedelta(microseconds=value // 10)


def encode_password(password: str) -> bytes:
    """Encode a password for the AD unicodePwd attribute."""
    return f'"{password}"'.encode('utf-16-le')


def split_dn(dn: str):
    """Split a DN into its RDN and parent DN."""
    components = parse_dn(dn)
    rdn = f"{components[0][0]}={components[0][1]}"
    parent = ','.join(f"{attr}={value}" for attr, value, _sep in components[1:])
    return rdn, parent


def ou_name_from_dn(dn: str) -> str:
    """Return the value of the first OU component of a DN, or ''."""
    try:
        components = parse_dn(dn)
    except LDAPException as e:
        logger.debug(f"Cannot parse DN {dn!r}: {e}")
        return ''
    for attr, value, _sep in components:
        if attr.upper() == 'OU':
            return value
    return ''


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _text(value: Any) -> str:
    value = _first(value)
    return '' if value is None else str(value)


class ADDirectoryClient(DirectoryClient):
    """
    Active Directory implementation of DirectoryClient.

    Args:
        config: LDAP configuration dictionary
        unique_id_field: Canonical field holding each person's unique ID
        ou_field: Canonical field holding each person's OU name
    """

    def __init__(self, config: Dict[str, Any], unique_id_field: str = 'EmployeeID',
                 ou_field: str = 'OU'):
        self.config = config
        self.domain = config['domain']
        self.server_url = config.get('server_url') or f"ldaps://{self.domain}"
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn') or ','.join(f"DC={part}" for part in self.domain.split('.'))
        self.ou_base_dn = config.get('ou_base_dn') or self.base_dn
        self.unique_id_field = unique_id_field
        self.ou_field = ou_field

        self.attribute_map = dict(DEFAULT_ATTRIBUTE_MAP)
        self.attribute_map.update(config.get('attribute_map') or {})

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    # Connection handling

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to the domain controller with retry logic.

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryConnectionError:
            raise
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException, DirectoryConnectionError),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback("Directory bind")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryConnectionError(
                f"Failed to connect to {self.server_url} after {e.attempts} attempts: {e.last_exception}"
            )
        except (LDAPException, DirectoryConnectionError) as e:
            raise DirectoryConnectionError(f"Failed to connect to {self.server_url}: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to {self.server_url}")
        return True

    def _open_and_bind(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            connection.open()

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except Exception:
            try:
                connection.unbind()
            except LDAPException:
                pass
            raise

        self.connection = connection

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration, or None when neither LDAPS nor StartTLS is used."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def close(self):
        """Close the LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    # Queries

    def attribute(self, field_name: str) -> str:
        """LDAP attribute for a canonical field name."""
        return self.attribute_map.get(field_name, field_name)

    def build_filter(self, criteria: AccountFilter) -> str:
        """Render structured criteria as an escaped LDAP filter."""
        parts = [USER_FILTER]
        for field_name, value in criteria.equals:
            parts.append(f"({self.attribute(field_name)}={escape_filter_chars(value)})")
        for field_name in criteria.present:
            parts.append(f"({self.attribute(field_name)}=*)")
        return f"(&{''.join(parts)})"

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                search_scope=SUBTREE) -> List[Dict[str, Any]]:
        """Run a paged search and return the entry dictionaries."""
        self._require_connection()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        try:
            results = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=search_scope,
                attributes=attributes,
                paged_size=self.page_size,
                generator=True
            )
            return [entry for entry in results if entry.get('type') == 'searchResEntry']
        except LDAPException as e:
            raise DirectoryOperationError(f"LDAP search failed ({search_filter}): {e}")

    def find_accounts(self, criteria: AccountFilter,
                      fields: Sequence[str] = ()) -> List[DirectoryAccount]:
        """Return user accounts matching the criteria with the requested fields projected."""
        wanted = [name for name in dict.fromkeys(list(fields) + [self.unique_id_field])
                  if name != self.ou_field]
        attributes = sorted({self.attribute(name) for name in wanted} |
                            {'sAMAccountName', 'userAccountControl', 'accountExpires'})

        entries = self._search(self.base_dn, self.build_filter(criteria), attributes)
        accounts = [self._to_account(entry, wanted) for entry in entries]
        logger.info(f"Retrieved {len(accounts)} directory accounts")
        return accounts

    def _to_account(self, entry: Dict[str, Any], fields: Sequence[str]) -> DirectoryAccount:
        attrs = entry.get('attributes', {})
        dn = entry['dn']
        ou_name = ou_name_from_dn(dn)

        values = {name: _text(attrs.get(self.attribute(name))) for name in fields}
        values[self.ou_field] = ou_name

        uac = _first(attrs.get('userAccountControl')) or 0
        return DirectoryAccount(
            dn=dn,
            account_name=_text(attrs.get('sAMAccountName')),
            unique_id=values.get(self.unique_id_field, ''),
            enabled=not int(uac) & UAC_ACCOUNTDISABLE,
            expires=filetime_to_datetime(attrs.get('accountExpires')),
            organizational_unit=ou_name,
            fields=values,
        )

    def account_name_owner(self, account_name: str) -> Optional[str]:
        unique_attr = self.attribute(self.unique_id_field)
        entries = self._search(
            self.base_dn,
            f"(&(objectClass=user)(sAMAccountName={escape_filter_chars(account_name)}))",
            [unique_attr]
        )
        if not entries:
            return None
        return _text(entries[0].get('attributes', {}).get(unique_attr))

    def find_organizational_unit(self, name: str) -> Optional[str]:
        entries = self._search(
            self.base_dn,
            f"(&{OU_FILTER}(ou={escape_filter_chars(name)}))",
            ['ou']
        )
        if not entries:
            return None
        if len(entries) > 1:
            logger.warning(f"Multiple organizational units named {name}, using {entries[0]['dn']}")
        return entries[0]['dn']

    # Mutations

    def create_organizational_unit(self, name: str, protected: bool = False) -> str:
        """
        Create an OU directly under the configured OU base.

        The unit is created without a deny-delete ACE, so it stays deletable.
        """
        if protected:
            raise DirectoryOperationError("Creating OUs protected from accidental deletion is not supported")
        dn = f"OU={escape_rdn(name)},{self.ou_base_dn}"
        self._apply(f"create OU {dn}", self.connection_or_fail().add,
                    dn, ['top', 'organizationalUnit'], {'ou': name})
        return dn

    def create_account(self, account: NewAccount) -> str:
        display_name = f"{account.given_name} {account.surname}".strip() or account.account_name
        dn = f"CN={escape_rdn(display_name)},{account.ou_dn}"

        uac = UAC_NORMAL_ACCOUNT if account.enabled else UAC_NORMAL_ACCOUNT | UAC_ACCOUNTDISABLE
        attributes = {
            'sAMAccountName': account.account_name,
            'userPrincipalName': account.principal_name,
            'displayName': display_name,
            'unicodePwd': encode_password(account.password),
            'userAccountControl': str(uac),
            self.attribute(self.unique_id_field): account.unique_id,
        }
        optional = {
            'givenName': account.given_name,
            'sn': account.surname,
            self.attribute('Title'): account.title,
            self.attribute('Department'): account.department,
            self.attribute('Office'): account.office,
        }
        attributes.update({attr: value for attr, value in optional.items() if value})
        if account.change_password_at_logon:
            attributes['pwdLastSet'] = '0'

        self._apply(f"create account {dn}", self.connection_or_fail().add,
                    dn, ['top', 'person', 'organizationalPerson', 'user'], attributes)
        return dn

    def update_account(self, dn: str, update: AccountUpdate) -> str:
        changes = {
            'sAMAccountName': [(MODIFY_REPLACE, [update.account_name])],
            'userPrincipalName': [(MODIFY_REPLACE, [update.principal_name])],
        }
        for field_name, value in (('Title', update.title), ('Department', update.department),
                                  ('Office', update.office)):
            if value is None:
                continue
            changes[self.attribute(field_name)] = [(MODIFY_REPLACE, [value] if value else [])]

        connection = self.connection_or_fail()
        self._apply(f"update account {dn}", connection.modify, dn, changes)

        if update.target_ou_dn:
            try:
                rdn, parent = split_dn(dn)
            except LDAPException as e:
                raise DirectoryOperationError(f"Cannot move account with invalid DN {dn!r}: {e}")
            if parent.lower() != update.target_ou_dn.lower():
                self._apply(f"move account {dn} to {update.target_ou_dn}", connection.modify_dn,
                            dn, rdn, new_superior=update.target_ou_dn)
                dn = f"{rdn},{update.target_ou_dn}"
        return dn

    def set_account_expiration(self, dn: str, when: datetime) -> None:
        changes = {'accountExpires': [(MODIFY_REPLACE, [str(datetime_to_filetime(when))])]}
        self._apply(f"set expiration on {dn}", self.connection_or_fail().modify, dn, changes)

    def disable_account(self, dn: str) -> None:
        entries = self._search(dn, '(objectClass=*)', ['userAccountControl'], search_scope=BASE)
        current = UAC_NORMAL_ACCOUNT
        if entries:
            current = int(_first(entries[0].get('attributes', {}).get('userAccountControl')) or current)
        changes = {'userAccountControl': [(MODIFY_REPLACE, [str(current | UAC_ACCOUNTDISABLE)])]}
        self._apply(f"disable account {dn}", self.connection_or_fail().modify, dn, changes)

    # Helpers

    def _require_connection(self):
        if not self._connected or self.connection is None:
            raise DirectoryOperationError("Not connected to the directory")

    def connection_or_fail(self) -> Connection:
        self._require_connection()
        return self.connection

    def _apply(self, action: str, operation, *args, **kwargs):
        """Run a mutating ldap3 call, raising DirectoryOperationError unless it succeeds."""
        try:
            ok = operation(*args, **kwargs)
        except LDAPException as e:
            raise DirectoryOperationError(f"Failed to {action}: {e}")
        if not ok:
            result = self.connection.result or {}
            raise DirectoryOperationError(
                f"Failed to {action}: {result.get('description', 'unknown error')} {result.get('message', '')}".rstrip()
            )
        logger.debug(f"Directory operation succeeded: {action}")
        return ok
