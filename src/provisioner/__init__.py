"""Declarative provisioner for Microsoft 365 lab tenants."""

__version__ = "0.1.0"
