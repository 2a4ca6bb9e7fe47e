"""
SSO Sync - Reconcile users, groups and group memberships from a source directory
into a SCIM identity store.

This package computes the create/update/delete operations needed to make the target
store match the source directory and applies them in a fixed dependency order.
"""

__version__ = "1.0.0"
__author__ = "SSO Sync Team"
