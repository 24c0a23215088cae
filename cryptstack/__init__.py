"""Layered LVM + LUKS + XFS storage provisioning."""

__version__ = "0.1.0"
