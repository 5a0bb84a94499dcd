"""
flows/__init__.py

Public API for the flows sub-package.
"""

from .classifier import InterfaceAddressSet, RemoteAttribution, classify
from .models import INTERNET, FlowCounters, FlowLabel, NetworkHeader
from .table import FlowCounterTable

__all__ = [
    "INTERNET",
    "FlowCounterTable",
    "FlowCounters",
    "FlowLabel",
    "InterfaceAddressSet",
    "NetworkHeader",
    "RemoteAttribution",
    "classify",
]
