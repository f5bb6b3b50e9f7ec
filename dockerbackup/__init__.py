"""Backup and restore of Docker hosts with borg."""

__version__ = '1.0.0'
