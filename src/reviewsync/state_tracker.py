"""Status transition tracking for mirrored changes.

Must run after the rest of the change row has been updated: the row update
deliberately leaves status untouched so the transition is observed here.
"""

import logging

from reviewsync import metrics
from reviewsync.storage import ChangeStore

logger = logging.getLogger("reviewsync.state_tracker")


class StateTracker:
    """Detects and records open/merged/closed/abandoned transitions."""

    def __init__(self, store: ChangeStore) -> None:
        self.store = store

    def track_transition(self, change_id: int, new_status: str) -> bool:
        """Record a status change for a stored change.

        Args:
            change_id: Local change row id
            new_status: Normalised status observed remotely

        Returns:
            True when the stored status differed and was shifted into
            previous_status. False when the row is missing or unchanged.
        """
        current = self.store.get_status(change_id)
        if current is None:
            logger.debug("Transition skipped, change %d not stored", change_id)
            return False
        if current == new_status:
            return False

        self.store.apply_transition(change_id, new_status)
        metrics.status_transitions_total.labels(previous=current, current=new_status).inc()
        logger.info(
            "change_status_transition",
            extra={
                "change_id": change_id,
                "previous_status": current,
                "status": new_status,
            },
        )
        return True
