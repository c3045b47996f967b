"""Serialized deployment orchestrator for IAM roles and IAM Identity Center permission sets."""

__version__ = "0.1.0"
