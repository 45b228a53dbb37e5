"""
Reaper module.
Contains the standalone sweeper that reclaims expired job leases.
"""

from delayed_jobs.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
