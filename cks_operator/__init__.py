"""Kopf operator that converges CloudStack cluster networking and CKS membership."""

__version__ = "0.1.0"
