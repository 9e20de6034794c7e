"""Thread-safe registry of deployment_id -> live log subscribers.

The worker thread publishes, SSE handlers consume. Persisted logs remain the
source of truth; a subscriber that misses messages can replay from storage.
"""
import threading
import queue
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_subscribers: Dict[str, List[queue.Queue]] = {}

# Put on every subscriber queue when the deployment reaches a terminal state
CLOSED = None


def subscribe(deployment_id: str) -> queue.Queue:
    q: queue.Queue = queue.Queue()
    with _lock:
        _subscribers.setdefault(deployment_id, []).append(q)
    logger.debug(f"Subscribed to logs of deployment {deployment_id}")
    return q


def unsubscribe(deployment_id: str, q: queue.Queue) -> None:
    with _lock:
        subscribers = _subscribers.get(deployment_id)
        if not subscribers:
            return
        if q in subscribers:
            subscribers.remove(q)
        if not subscribers:
            _subscribers.pop(deployment_id, None)
    logger.debug(f"Unsubscribed from logs of deployment {deployment_id}")


def publish(deployment_id: str, entry: dict) -> None:
    with _lock:
        subscribers = list(_subscribers.get(deployment_id, []))
    for q in subscribers:
        q.put(entry)


def close(deployment_id: str) -> None:
    with _lock:
        subscribers = _subscribers.pop(deployment_id, [])
    for q in subscribers:
        q.put(CLOSED)


def subscriber_count(deployment_id: Optional[str] = None) -> int:
    with _lock:
        if deployment_id is None:
            return sum(len(s) for s in _subscribers.values())
        return len(_subscribers.get(deployment_id, []))
