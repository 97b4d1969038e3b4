"""Build orchestration module.

This module handles:
- Build job records and the job state machine
- The durable build queue and worker pool
- Per-build artifact directories
- The status push feed
"""

from bundlepipe.builds.models import BuildJob, QueuedBuild

__all__ = ["BuildJob", "QueuedBuild"]

# Lazy imports for submodules to avoid circular imports
# Access via bundlepipe.builds.service, bundlepipe.builds.worker, etc.
