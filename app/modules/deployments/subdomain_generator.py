"""Random subdomain labels for new deployments."""
import logging
import secrets
import string
import threading
from typing import Callable, Optional, Set

from app.config import settings
from app.modules.deployments.errors import SubdomainExhausted

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits


def random_label(length: int) -> str:
    """DNS-safe label: lowercase letters and digits, always starting with a letter."""
    first = secrets.choice(string.ascii_lowercase)
    return first + "".join(secrets.choice(_ALPHABET) for _ in range(length - 1))


class SubdomainGenerator:
    """Hands out labels that are neither taken in storage nor reserved by an in-flight request.

    Reservations close the window between picking a label and inserting the row;
    the unique constraint on deployments.subdomain is the final word.
    """

    def __init__(
        self,
        length: Optional[int] = None,
        fallback_length: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.length = length or settings.subdomain_length
        self.fallback_length = fallback_length or settings.subdomain_fallback_length
        self.max_attempts = max_attempts or settings.subdomain_max_attempts
        self._reserved: Set[str] = set()
        self._lock = threading.Lock()

    def _try_reserve(self, label: str, is_taken: Callable[[str], bool]) -> bool:
        with self._lock:
            if label in self._reserved:
                return False
            self._reserved.add(label)
        if is_taken(label):
            self.release(label)
            return False
        return True

    def generate_unique(self, is_taken: Callable[[str], bool]) -> str:
        for _ in range(self.max_attempts):
            label = random_label(self.length)
            if self._try_reserve(label, is_taken):
                return label
        logger.warning(
            f"No free {self.length}-char subdomain after {self.max_attempts} attempts, "
            f"trying {self.fallback_length} chars"
        )
        for _ in range(self.max_attempts):
            label = random_label(self.fallback_length)
            if self._try_reserve(label, is_taken):
                return label
        raise SubdomainExhausted("Could not generate a unique subdomain")

    def release(self, label: str):
        with self._lock:
            self._reserved.discard(label)


_generator: Optional[SubdomainGenerator] = None
_generator_lock = threading.Lock()


def get_subdomain_generator() -> SubdomainGenerator:
    global _generator
    with _generator_lock:
        if _generator is None:
            _generator = SubdomainGenerator()
        return _generator
