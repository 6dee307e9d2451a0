"""Work-item ("bead") store adapter.

Public API:
    from fleetmaster.beads import Bead, BeadStatus, BeadStore
"""

from fleetmaster.beads.models import Bead, BeadStatus
from fleetmaster.beads.store import BeadStore

__all__ = ["Bead", "BeadStatus", "BeadStore"]
