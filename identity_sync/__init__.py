"""
Identity Sync - Mirror users and groups from an external identity provider into a local store.

This package provides a dynamic-membership sync engine that stores nested group
membership as flattened principal names on local users, optionally materializing
memberless group placeholders, and migrates records synced in the legacy mode.
"""

__version__ = "1.0.0"
__author__ = "Identity Sync Team"
