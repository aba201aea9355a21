"""
Govflow Kernel

Persistence and domain core of the government service workflow engine:
- Versioned, pinned workflow definitions
- Optimistic (row-version) concurrency on applications
- Officer tasks with working-day SLAs
- Bounded query/resubmission cycles
- Full auditability via hash chain
"""

__version__ = "0.1.0"
