"""
Transports between the client and the table service.

``InMemoryTransport`` talks to the in-process emulator; ``AzureTablesTransport``
talks to the real service.
"""

from .base import TableTransport
from .memory import InMemoryTransport

__all__ = [
    "TableTransport",
    "InMemoryTransport",
]
