"""
Main orchestrator for AD Roster Sync.

This module drives one synchronization run: read the roster, provision
organizational units, reconcile roster against directory, then create, update
and disable accounts. Failures for one person are recorded and the run moves
on; failures in shared setup abort the run.
"""

import sys
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Mapping, Optional

from ad_roster_sync.config import (
    GIVEN_NAME_FIELD,
    SURNAME_FIELD,
    ConfigurationError,
    SyncContext,
    build_context,
    load_config,
)
from ad_roster_sync.directory import (
    AccountFilter,
    AccountUpdate,
    DirectoryAccount,
    DirectoryClient,
    NewAccount,
    summarize_accounts,
)
from ad_roster_sync.errors import (
    DirectoryConnectionError,
    DirectoryOperationError,
    MissingOrganizationalUnit,
    NoUsernameAvailable,
    SourceReadError,
    SyncError,
)
from ad_roster_sync.ldap_client import ADDirectoryClient
from ad_roster_sync.logging_setup import audit_logger, setup_logging
from ad_roster_sync.notifications import (
    format_runtime,
    send_directory_connection_failure,
    send_failure_notification,
    send_person_errors_notification,
    send_success_summary,
)
from ad_roster_sync.passwords import generate_password
from ad_roster_sync.provisioning import OUProvisioner
from ad_roster_sync.reconcile import ReconciliationResult, reconcile
from ad_roster_sync.roster import RosterReader, distinct_values
from ad_roster_sync.usernames import UsernameAllocator

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PERSON_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_SOURCE_ERROR = 5
EXIT_DIRECTORY_ERROR = 6


class ErrorLimitReached(SyncError):
    """Raised when per-person errors reach error_handling.max_person_errors."""
    pass


@dataclass(frozen=True)
class PersonOutcome:
    """Result of processing one person."""

    unique_id: str
    action: str
    status: str
    account_name: str = ''
    message: str = ''


class SyncOrchestrator:
    """
    Runs the roster to directory synchronization.

    Args:
        config_path: Path to configuration file
        dry_run: Log intended changes without applying them
        context: Pre-built run context (skips configuration loading)
        client: Pre-built, connected directory client
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False,
                 context: Optional[SyncContext] = None, client: Optional[DirectoryClient] = None):
        self.config_path = config_path
        self.dry_run = dry_run
        self.config = None
        self.context = context
        self.client = client

        self.outcomes: List[PersonOutcome] = []
        self.person_errors: List[str] = []
        self.aborted = False

        # Names handed out during this run, mapped to the unique ID they went to
        self._allocated_names: Dict[str, str] = {}
        self._ou_cache: Dict[str, Optional[str]] = {}
        self._planned_ous = set()

        self.sync_stats = {
            'roster_records': 0,
            'directory_accounts': 0,
            'ous_created': 0,
            'accounts_created': 0,
            'accounts_updated': 0,
            'accounts_disabled': 0,
            'accounts_skipped': 0,
            'total_errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info(f"Starting AD Roster Sync{' (dry run)' if self.context.dry_run else ''}")

            roster = self._read_roster()
            self._connect_directory()
            self.synchronize(roster)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            if self.person_errors:
                self._send_person_errors_notification()
                logger.warning(f"Sync completed with {len(self.person_errors)} account errors")
                return EXIT_PERSON_ERRORS

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except SourceReadError as e:
            logger.error(f"Roster error: {e}")
            self._send_failure_notification("Roster Read Failed", str(e))
            return EXIT_SOURCE_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            self._send_directory_connection_failure(str(e))
            return EXIT_CONNECTION_ERROR
        except DirectoryOperationError as e:
            logger.error(f"Directory error during setup: {e}")
            self._send_failure_notification("Directory Setup Failed", str(e))
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load configuration and build the run context."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        self.context = build_context(self.config, dry_run=self.dry_run)
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _read_roster(self) -> List[Mapping[str, str]]:
        ctx = self.context
        reader = RosterReader(ctx.csv_file_path, ctx.field_map, delimiter=ctx.delimiter, encoding=ctx.encoding)
        return reader.read()

    def _connect_directory(self):
        """Create and bind the Active Directory client."""
        client = ADDirectoryClient(
            self.config['ldap'],
            unique_id_field=self.context.unique_id,
            ou_field=self.context.ou_property
        )
        client.connect()
        self.client = client

    # Pipeline

    def synchronize(self, roster: List[Mapping[str, str]],
                    run_date: Optional[datetime] = None) -> ReconciliationResult:
        """
        Apply the roster to the directory.

        Steps run strictly in order: provision OUs, reconcile, create new
        accounts, update matched accounts, disable stale accounts.

        Args:
            roster: Records read from the roster
            run_date: Reference time for expiration dates (defaults to now, UTC)

        Returns:
            The reconciliation that was applied

        Raises:
            DirectoryOperationError: If OU provisioning or the account query fails
        """
        ctx = self.context
        run_date = run_date or datetime.now(timezone.utc)
        self.sync_stats['roster_records'] = len(roster)

        created_ous = OUProvisioner(self.client, dry_run=ctx.dry_run).ensure(
            distinct_values(roster, ctx.ou_property)
        )
        self.sync_stats['ous_created'] = len(created_ous)
        for name in created_ous:
            audit_logger.log_ou_creation(name)
        if ctx.dry_run:
            self._planned_ous.update(created_ous)

        accounts = self.client.find_accounts(AccountFilter(present=(ctx.unique_id,)), ctx.fields)
        self.sync_stats['directory_accounts'] = len(accounts)
        logger.info(f"Directory snapshot: {summarize_accounts(accounts)}")
        accounts_by_id: Dict[str, List[DirectoryAccount]] = {}
        for account in accounts:
            accounts_by_id.setdefault(account.fields.get(ctx.unique_id), []).append(account)

        result = reconcile(roster, [account.fields for account in accounts], ctx.unique_id)

        try:
            for unique_id in sorted(result.new):
                self._process(unique_id, 'create', self.create_account, result.new_records[unique_id])
            for unique_id in sorted(result.matched):
                account, *duplicates = accounts_by_id[unique_id]
                for duplicate in duplicates:
                    logger.warning(f"{ctx.unique_id} {unique_id} is also held by {duplicate.account_name} "
                                   f"({duplicate.dn}), only {account.account_name} is updated")
                self._process(unique_id, 'update', self.update_account,
                              result.matched_records[unique_id], account)
            for unique_id in sorted(result.stale):
                # Every account carrying a departed ID is disabled
                for account in accounts_by_id[unique_id]:
                    self._process(unique_id, 'disable', self.disable_account, account, run_date)
        except ErrorLimitReached as e:
            self.aborted = True
            logger.error(str(e))

        return result

    def _process(self, unique_id: str, action: str, operation, *args):
        """Run one person's step, recording the outcome instead of propagating per-person errors."""
        try:
            account_name = operation(*args)
        except (MissingOrganizationalUnit, NoUsernameAvailable) as e:
            self._record_error(unique_id, action, 'skipped', str(e))
        except DirectoryOperationError as e:
            self._record_error(unique_id, action, 'failed', str(e))
        else:
            self.outcomes.append(PersonOutcome(unique_id, action, 'ok', account_name))
            return

        limit = self.context.max_person_errors
        if limit and len(self.person_errors) >= limit:
            raise ErrorLimitReached(f"Stopping after {len(self.person_errors)} account errors")

    def _record_error(self, unique_id: str, action: str, status: str, message: str):
        logger.error(f"Cannot {action} account for {self.context.unique_id} {unique_id}: {message}")
        audit_logger.log_account_operation(action, unique_id, '', False, message)
        self.outcomes.append(PersonOutcome(unique_id, action, status, message=message))
        self.person_errors.append(f"{action} {unique_id}: {message}")
        self.sync_stats['total_errors'] += 1
        if status == 'skipped':
            self.sync_stats['accounts_skipped'] += 1

    # Per-person steps

    def create_account(self, record: Mapping[str, str]) -> str:
        """Create the account for a person who is in the roster only."""
        ctx = self.context
        unique_id = record[ctx.unique_id]
        given_name = record.get(GIVEN_NAME_FIELD, '')
        surname = record.get(SURNAME_FIELD, '')

        account_name = UsernameAllocator(self._name_taken).allocate(given_name, surname)

        ou_name = record.get(ctx.ou_property, '')
        ou_dn = self._lookup_ou(ou_name)
        if not ou_dn:
            raise MissingOrganizationalUnit(ou_name)

        account = NewAccount(
            given_name=given_name,
            surname=surname,
            account_name=account_name,
            principal_name=f"{account_name}@{ctx.principal_suffix}",
            password=generate_password(ctx.password_length),
            ou_dn=ou_dn,
            unique_id_field=ctx.unique_id,
            unique_id=unique_id,
            title=self._synced_value(record, 'title') or '',
            department=self._synced_value(record, 'department') or '',
            office=self._synced_value(record, 'office') or '',
            enabled=True,
            change_password_at_logon=True,
        )

        if ctx.dry_run:
            logger.info(f"[dry-run] Would create account {account_name} in {ou_dn}")
        else:
            dn = self.client.create_account(account)
            logger.info(f"Created account {account_name} ({dn})")
            audit_logger.log_account_operation('create', unique_id, account_name, True, dn)

        self._allocated_names[account_name] = unique_id
        self.sync_stats['accounts_created'] += 1
        return account_name

    def update_account(self, record: Mapping[str, str], account: DirectoryAccount) -> str:
        """Refresh synced fields of an account that is in both roster and directory."""
        ctx = self.context
        unique_id = record[ctx.unique_id]
        given_name = record.get(GIVEN_NAME_FIELD, '')
        surname = record.get(SURNAME_FIELD, '')

        allocator = UsernameAllocator(lambda name: self._taken_by_other(name, unique_id))
        account_name = allocator.recheck(account.account_name, given_name, surname)

        # Unlike creation, a missing target OU only skips the move
        ou_name = record.get(ctx.ou_property, '')
        try:
            ou_dn = self._lookup_ou(ou_name)
        except DirectoryOperationError as e:
            logger.warning(f"Lookup of organizational unit {ou_name!r} failed: {e}")
            ou_dn = None
        if not ou_dn:
            logger.warning(f"Organizational unit {ou_name!r} not found, not moving {account.account_name}")

        update = AccountUpdate(
            account_name=account_name,
            principal_name=f"{account_name}@{ctx.principal_suffix}",
            title=self._synced_value(record, 'title'),
            department=self._synced_value(record, 'department'),
            office=self._synced_value(record, 'office'),
            target_ou_dn=ou_dn,
        )

        if ctx.dry_run:
            logger.info(f"[dry-run] Would update account {account.account_name} -> {account_name}")
        else:
            dn = self.client.update_account(account.dn, update)
            logger.debug(f"Updated account {account_name} ({dn})")
            audit_logger.log_account_operation('update', unique_id, account_name, True, dn)

        self._allocated_names[account_name] = unique_id
        self.sync_stats['accounts_updated'] += 1
        return account_name

    def disable_account(self, account: DirectoryAccount, run_date: datetime) -> str:
        """Stamp an expiration date on a stale account and disable it."""
        expires = run_date + timedelta(days=self.context.keep_disabled_for_days)

        if self.context.dry_run:
            logger.info(f"[dry-run] Would disable account {account.account_name}, expiring {expires:%Y-%m-%d}")
        else:
            self.client.set_account_expiration(account.dn, expires)
            self.client.disable_account(account.dn)
            logger.info(f"Disabled account {account.account_name}, expiring {expires:%Y-%m-%d}")
            audit_logger.log_account_operation('disable', account.unique_id, account.account_name, True,
                                               f"expires {expires:%Y-%m-%d}")

        self.sync_stats['accounts_disabled'] += 1
        return account.account_name

    # Helpers

    def _synced_value(self, record: Mapping[str, str], attribute: str) -> Optional[str]:
        """Roster value for a synced attribute, or None when the roster does not carry it."""
        field_name = self.context.synced_fields.get(attribute)
        if field_name is None or field_name not in record:
            return None
        return record[field_name]

    def _name_taken(self, name: str) -> bool:
        return name in self._allocated_names or self.client.account_exists(name)

    def _taken_by_other(self, name: str, unique_id: str) -> bool:
        """True when ``name`` belongs to an account other than the one with ``unique_id``."""
        claimed_by = self._allocated_names.get(name)
        if claimed_by is not None:
            return claimed_by != unique_id
        owner = self.client.account_name_owner(name)
        return owner is not None and owner != unique_id

    def _lookup_ou(self, name: str) -> Optional[str]:
        if not name:
            return None
        if name in self._planned_ous:
            return f"OU={name} (planned)"
        if name not in self._ou_cache:
            self._ou_cache[name] = self.client.find_organizational_unit(name)
        return self._ou_cache[name]

    # Notifications and reporting

    def _notifications_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def _send_failure_notification(self, title: str, error_message: str):
        try:
            send_failure_notification(title, error_message, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_person_errors_notification(self):
        try:
            send_person_errors_notification(self.person_errors, self._notifications_config(), self.aborted)
        except Exception as e:
            logger.error(f"Failed to send account error notification: {e}")

    def _send_directory_connection_failure(self, error_message: str):
        try:
            retry_count = (self.config or {}).get('error_handling', {}).get('max_retries', 3)
            send_directory_connection_failure(error_message, self._notifications_config(), retry_count)
        except Exception as e:
            logger.error(f"Failed to send directory failure notification: {e}")

    def _send_success_notification(self):
        try:
            send_success_summary(self.sync_stats, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        stats = self.sync_stats
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Roster records: {stats['roster_records']}")
        logger.info(f"Directory accounts: {stats['directory_accounts']}")
        logger.info(f"OUs created: {stats['ous_created']}")
        logger.info(f"Accounts created: {stats['accounts_created']}")
        logger.info(f"Accounts updated: {stats['accounts_updated']}")
        logger.info(f"Accounts disabled: {stats['accounts_disabled']}")
        logger.info(f"Accounts skipped: {stats['accounts_skipped']}")
        logger.info(f"Total errors: {stats['total_errors']}")
        for outcome in self.outcomes:
            if outcome.status != 'ok':
                logger.warning(f"{outcome.action} {outcome.unique_id}: {outcome.status}, {outcome.message}")
        if self.aborted:
            logger.warning("Run stopped early after reaching the error limit")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, roster header and directory connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name, ok, message):
            health_status['checks'][name] = {'status': 'pass' if ok else 'fail', 'message': message}
            if not ok:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        ctx = self.context
        try:
            RosterReader(ctx.csv_file_path, ctx.field_map, ctx.delimiter, ctx.encoding).check_header()
            record('roster', True, f'Roster header valid: {ctx.csv_file_path}')
        except SourceReadError as e:
            record('roster', False, str(e))

        client = ADDirectoryClient(self.config['ldap'], unique_id_field=ctx.unique_id, ou_field=ctx.ou_property)
        try:
            client.connect(max_retries=1, retry_wait=0)
            record('directory', True, 'Directory connection successful')
        except DirectoryConnectionError as e:
            record('directory', False, f'Directory connection failed: {e}')
        finally:
            client.close()

        notifications_config = self._notifications_config()
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                record('notifications', False, f'Missing notification config: {missing_fields}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        if self.client:
            self.client.close()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Synchronize Active Directory accounts with an HR roster')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show the changes that would be made without applying them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        from ad_roster_sync.notifications import send_test_notification
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)
        if send_test_notification(orchestrator._notifications_config()):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
