"""Priority queue store for document-processing jobs."""

from docqueue.queue.store import QUEUE_ORDER, PriorityQueueStore

__all__ = ["PriorityQueueStore", "QUEUE_ORDER"]
