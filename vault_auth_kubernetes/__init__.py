"""Provision and reconcile Vault kubernetes auth roles and service accounts."""

__version__ = "0.1.0"
