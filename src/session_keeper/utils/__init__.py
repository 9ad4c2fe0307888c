"""Shared logging, error, configuration and event utilities."""
