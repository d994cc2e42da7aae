"""
Lease module.
Contains the claim protocol and the expired-lease reaper.
"""

from leasequeue.lease.manager import LeaseManager
from leasequeue.lease.reaper import Reaper

__all__ = ["LeaseManager", "Reaper"]
