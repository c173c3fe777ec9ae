"""
LDAP Lifecycle - Password expiry, user history and account audit for Active Directory.

This package reads user entries from an LDAP directory to warn users whose
passwords are about to expire, keep an append-only history of directory
changes in a relational database, and produce account audit reports.
"""

__version__ = "1.0.0"
__author__ = "LDAP Lifecycle Team"
