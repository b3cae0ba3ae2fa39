"""
In-process table service used as the default transport target and in tests.
"""

from .backend import DEV_ACCOUNT_KEY, DEV_ACCOUNT_NAME, TableEmulator
from .query import ODataFilter, ODataParseError, ODataQuery
from .sas_validator import TableSasToken, TableSasValidator

__all__ = [
    "DEV_ACCOUNT_KEY",
    "DEV_ACCOUNT_NAME",
    "TableEmulator",
    "ODataFilter",
    "ODataParseError",
    "ODataQuery",
    "TableSasToken",
    "TableSasValidator",
]
