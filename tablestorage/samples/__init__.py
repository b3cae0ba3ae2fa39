"""Getting-started scenarios for the table storage client."""

from .advanced import AdvancedSampleResult, run_advanced_sample
from .basic import BasicSampleResult, run_basic_sample
from .customer import CustomerEntity

__all__ = [
    "AdvancedSampleResult",
    "BasicSampleResult",
    "CustomerEntity",
    "run_advanced_sample",
    "run_basic_sample",
]
