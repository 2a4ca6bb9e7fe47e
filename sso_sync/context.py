"""
Per-run state threaded explicitly through every sync phase.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple, Type, TypeVar

from sso_sync.errors import OperationError, SyncCancelled
from sso_sync.logging_setup import audit_logger
from sso_sync.models import TargetUser

if TYPE_CHECKING:
    from sso_sync.snapshot import SourceSnapshot, TargetSnapshot

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class SyncContext:
    """
    Carries everything one run shares between its phases.

    A fresh context is created for every run; nothing in it survives to the next one.
    Setting ``cancel_event`` makes the next pending collaborator call abort.
    """
    cancel_event: threading.Event = field(default_factory=threading.Event)
    source: Optional['SourceSnapshot'] = None
    target: Optional['TargetSnapshot'] = None
    # Filled by the alternate user pass, read by the alternate group pass
    user_index: Dict[str, TargetUser] = field(default_factory=dict)

    def cancel(self):
        self.cancel_event.set()

    def check_cancelled(self):
        """Raise SyncCancelled if the run has been cancelled."""
        if self.cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")


def run_operation(ctx: SyncContext, operation: str, key: str, func: Callable[[], T],
                  expected: Tuple[Type[Exception], ...] = ()) -> T:
    """
    Run one collaborator call, wrapping fatal failures with operation and key.

    Exceptions listed in ``expected`` are handled by the caller and pass through.

    Raises:
        SyncCancelled: If the context was cancelled before the call
        OperationError: For any other failure
    """
    ctx.check_cancelled()
    try:
        return func()
    except expected:
        raise
    except (SyncCancelled, OperationError):
        raise
    except Exception as e:
        logger.error(f"{operation} failed: key={key} error={e}")
        audit_logger.log_target_operation(operation, key, success=False)
        raise OperationError(operation, key, e) from e
