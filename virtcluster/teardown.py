"""Result collection for best-effort teardown.

Teardown routines attempt every deletion and record what happened to each
resource instead of stopping at the first failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from virtcluster.errors import TeardownPartialFailure
from virtcluster.hypervisor.base import HypervisorError, ResourceNotFound

logger = logging.getLogger(__name__)


@dataclass
class TeardownReport:
    """Outcome of a best-effort teardown pass."""
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def attempt(self, label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Run one deletion, recording its outcome. Returns True if it removed something.

        Absent resources count as missing, not as errors.
        """
        try:
            func(*args, **kwargs)
        except (ResourceNotFound, FileNotFoundError):
            logger.debug(f"{label}: already absent")
            self.missing.append(label)
            return False
        except (HypervisorError, OSError) as e:
            logger.warning(f"{label}: {e}")
            self.errors.append(f"{label}: {e}")
            return False
        self.removed.append(label)
        return True

    def merge(self, other: "TeardownReport") -> "TeardownReport":
        self.removed.extend(other.removed)
        self.missing.extend(other.missing)
        self.errors.extend(other.errors)
        return self

    def raise_for_errors(self) -> None:
        if self.errors:
            raise TeardownPartialFailure(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": list(self.removed),
            "missing": list(self.missing),
            "errors": list(self.errors),
        }
