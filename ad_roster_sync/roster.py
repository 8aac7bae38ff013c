"""
Roster reader for the HR CSV export.

Projects the configured source columns of each CSV row onto canonical field
names so roster rows and directory entries share one shape.
"""

import csv
import logging
from types import MappingProxyType
from typing import Iterable, List, Mapping, Set

from ad_roster_sync.errors import SourceReadError

logger = logging.getLogger(__name__)

PersonRecord = Mapping[str, str]


def project(row: Mapping[str, str], field_map: Mapping[str, str]) -> PersonRecord:
    """Project a source row onto canonical field names. Missing cells become ''."""
    record = {}
    for source_column, field_name in field_map.items():
        value = row.get(source_column)
        record[field_name] = '' if value is None else str(value)
    return MappingProxyType(record)


class RosterReader:
    """Loads PersonRecords from a delimited roster file."""

    def __init__(self, path: str, field_map: Mapping[str, str],
                 delimiter: str = ',', encoding: str = 'utf-8-sig'):
        self.path = path
        self.field_map = field_map
        self.delimiter = delimiter
        self.encoding = encoding

    def read(self) -> List[PersonRecord]:
        """
        Read every data row of the roster.

        Returns:
            One PersonRecord per data row, in file order

        Raises:
            SourceReadError: If the file cannot be read or a mapped column is missing
        """
        try:
            with open(self.path, 'r', newline='', encoding=self.encoding) as f:
                reader = csv.DictReader(f, delimiter=self.delimiter)
                headers = reader.fieldnames
                if not headers:
                    raise SourceReadError(f"Roster file has no header row: {self.path}")

                missing = [column for column in self.field_map if column not in headers]
                if missing:
                    raise SourceReadError(
                        f"Roster file {self.path} is missing column(s): {', '.join(missing)}"
                    )

                records = [project(row, self.field_map) for row in reader]
        except OSError as e:
            raise SourceReadError(f"Cannot open roster file {self.path}: {e}")
        except (UnicodeDecodeError, csv.Error) as e:
            raise SourceReadError(f"Cannot parse roster file {self.path}: {e}")

        logger.info(f"Read {len(records)} roster records from {self.path}")
        return records

    def check_header(self) -> List[str]:
        """Return the header row after verifying every mapped column is present."""
        try:
            with open(self.path, 'r', newline='', encoding=self.encoding) as f:
                headers = next(csv.reader(f, delimiter=self.delimiter), [])
        except OSError as e:
            raise SourceReadError(f"Cannot open roster file {self.path}: {e}")
        except (UnicodeDecodeError, csv.Error) as e:
            raise SourceReadError(f"Cannot parse roster file {self.path}: {e}")

        missing = [column for column in self.field_map if column not in headers]
        if missing:
            raise SourceReadError(
                f"Roster file {self.path} is missing column(s): {', '.join(missing)}"
            )
        return headers


def distinct_values(records: Iterable[PersonRecord], field_name: str) -> Set[str]:
    """Distinct non-empty values of one field across records."""
    return {record.get(field_name, '') for record in records} - {''}
