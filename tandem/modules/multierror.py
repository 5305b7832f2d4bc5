# tandem/modules/multierror.py
import threading
from typing import List, Optional

from tandem.modules.errors import TandemError


class MultiError(TandemError):
    """
    Thread-safe collector for errors raised by concurrent workers.

    Workers call ``add``; the caller decides pass/fail with ``ret()`` once every
    worker of the stage has finished.
    """

    def __init__(self, errors: Optional[List[BaseException]] = None):
        super().__init__()
        self.errors: List[BaseException] = list(errors or [])
        self._lock = threading.Lock()

    def add(self, err: Optional[BaseException]):
        if err is None:
            return
        with self._lock:
            self.errors.append(err)

    def ret(self) -> Optional["MultiError"]:
        with self._lock:
            return self if self.errors else None

    def __len__(self):
        return len(self.errors)

    def __str__(self):
        return "\n".join(str(e) for e in self.errors)
