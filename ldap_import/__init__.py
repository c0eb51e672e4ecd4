"""
LDAP Bulk Import - Reconcile a directory with a tabular import of people.

This package analyzes import rows against the current directory state, plans
the containers, accounts, shares, groups and deletions needed to match them,
and applies the plan with bounded concurrency.
"""

__version__ = "1.0.0"
__author__ = "LDAP Bulk Import Team"
