"""Schemas exposed by the HTTP interface."""

from .dispatch import DispatchStatusRead, FailingDispatchRead

__all__ = ["DispatchStatusRead", "FailingDispatchRead"]
