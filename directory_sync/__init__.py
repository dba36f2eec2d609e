"""
Directory Sync - Configuration and directory reading for LDAP directory synchronization.

This package loads and validates the directorySync configuration (sync policy,
schema mapping and the registry of LDAP domains), connects to each configured
domain and records the users and groups it finds as snapshots that can be
reconciled between runs.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
