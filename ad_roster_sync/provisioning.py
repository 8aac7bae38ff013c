"""
Organizational unit provisioning.

Ensures every OU referenced by the roster exists before any account is
created in it.
"""

import logging
from typing import Iterable, List

from ad_roster_sync.directory import DirectoryClient

logger = logging.getLogger(__name__)


class OUProvisioner:
    """Creates missing organizational units. Safe to run repeatedly."""

    def __init__(self, client: DirectoryClient, dry_run: bool = False):
        self.client = client
        self.dry_run = dry_run

    def ensure(self, ou_names: Iterable[str]) -> List[str]:
        """
        Create every named OU that does not exist yet.

        Args:
            ou_names: OU names referenced by the roster; blanks and repeats are ignored

        Returns:
            Names of the OUs created (or that would be created in dry-run mode)

        Raises:
            DirectoryOperationError: If a lookup or create fails
        """
        created = []
        for name in sorted(set(ou_names) - {''}):
            if self.client.find_organizational_unit(name):
                logger.debug(f"Organizational unit {name} already exists")
                continue

            if self.dry_run:
                logger.info(f"[dry-run] Would create organizational unit {name}")
            else:
                dn = self.client.create_organizational_unit(name, protected=False)
                logger.info(f"Created organizational unit {name} ({dn})")
            created.append(name)

        return created
