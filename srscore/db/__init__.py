"""Database package for srscore.

Only SRSDatabase is exported as the public API; connection handling,
schema management and marshalling are internal collaborators.
"""

from .database import SRSDatabase

__all__ = ["SRSDatabase"]
