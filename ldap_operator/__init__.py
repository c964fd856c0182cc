"""
LDAP Operator - Keep a remote LDAP directory tree in sync with declarative objects.

This package provides the synchronization engine that resolves references between
control-plane objects, derives distinguished names, and idempotently applies
organizational units, groups and users to an LDAP directory.
"""

__version__ = "0.2.0"
__author__ = "LDAP Operator Team"
