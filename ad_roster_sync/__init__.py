"""
AD Roster Sync - Reconcile Active Directory user accounts against an HR roster.

This package reads the roster CSV export, provisions the organizational units it
references, and creates, updates and disables directory accounts so the
directory matches the roster.
"""

__version__ = "1.0.0"
__author__ = "AD Roster Sync Team"
