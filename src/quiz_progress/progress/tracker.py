"""Per-category record of which question ids have been answered."""

import structlog

from quiz_progress.storage.gateway import ANSWERED_TRACKER_KEY, StorageGateway, user_key

logger = structlog.get_logger()

TrackerData = dict[str, list[str]]


class AnsweredQuestionsTracker:
    """Unique answered ids per category, stored beside the progress document.

    Args:
        gateway: Storage gateway.
        identity: Identity whose tracker this is.
    """

    def __init__(self, gateway: StorageGateway, identity: str):
        self.gateway = gateway
        self.identity = identity
        self.key = user_key(ANSWERED_TRACKER_KEY, identity)

    def load(self) -> TrackerData:
        data = self.gateway.get(self.key, {})
        if not isinstance(data, dict):
            logger.warning("tracker_shape_invalid", identity=self.identity)
            return {}
        return {
            category: [str(qid) for qid in ids]
            for category, ids in data.items()
            if isinstance(ids, list)
        }

    def save(self, data: TrackerData) -> None:
        self.gateway.set(self.key, data)

    def add(self, category: str, question_id: str, total_questions: int | None) -> bool:
        """Record an answered id. Returns False when it was already known or the category is full."""
        data = self.load()
        ids = data.setdefault(category, [])
        if question_id in ids:
            return False
        if total_questions is not None and len(ids) >= total_questions:
            logger.warning(
                "tracker_category_full",
                identity=self.identity,
                category=category,
                total=total_questions,
            )
            return False
        ids.append(question_id)
        self.save(data)
        return True

    def count(self, category: str) -> int:
        return len(set(self.load().get(category, [])))

    def clear(self) -> bool:
        existed = self.gateway.get(self.key) is not None
        self.gateway.remove(self.key)
        return existed
