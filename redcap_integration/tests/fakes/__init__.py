"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeSourceSystemPort: Canned REDCap field values, captured write-backs
- FakeTargetSystemPort: Canned subject outcomes, captured upserts
"""

from .source import FakeSourceSystemPort
from .target import FakeTargetSystemPort

__all__ = [
    "FakeSourceSystemPort",
    "FakeTargetSystemPort",
]
