"""Process-exit wiring for an audit logger.

The engine never touches OS signals itself; the process entry point calls
``install_shutdown_handlers`` once.
"""

import atexit
import logging
import os
import signal
import threading
from typing import Callable, Dict, Iterable

from auditlog.audit.logger import AuditLogger
from auditlog.common.constants import AuditConstants

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _resend_after(worker: threading.Thread, signum: int) -> None:
    worker.join()
    os.kill(os.getpid(), signum)


def install_shutdown_handlers(
    audit_logger: AuditLogger,
    signals: Iterable[int] = DEFAULT_SIGNALS,
    use_atexit: bool = True,
    drain_timeout: float = AuditConstants.SIGNAL_DRAIN_TIMEOUT_SECONDS,
) -> Callable[[], None]:
    """Run ``audit_logger.shutdown()`` on the given signals and at exit.

    The shutdown runs on its own thread. The handler waits up to
    ``drain_timeout`` seconds for it, unless the signal interrupted a
    flush on this very thread; then it returns at once so the interrupted
    flush can release its lock. Previously installed Python-level
    handlers are chained after that; default dispositions are re-raised
    once the drain completes so the process still terminates. Must be
    called from the main thread.

    Returns:
        A callable that restores the previous handlers and unregisters
        the exit hook.
    """
    previous: Dict[int, object] = {}

    def _handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down audit logger")
        worker = threading.Thread(target=audit_logger.shutdown, name="AuditShutdown")
        worker.start()
        if not audit_logger.is_flushing_in_current_thread():
            worker.join(drain_timeout)

        prior = previous.get(signum)
        if callable(prior):
            prior(signum, frame)
        elif prior == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            if worker.is_alive():
                threading.Thread(
                    target=_resend_after, args=(worker, signum), name="AuditShutdownSignal"
                ).start()
            else:
                signal.raise_signal(signum)

    for signum in signals:
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handler)

    if use_atexit:
        atexit.register(audit_logger.shutdown)

    def uninstall() -> None:
        for signum, prior in previous.items():
            signal.signal(signum, prior if prior is not None else signal.SIG_DFL)
        if use_atexit:
            atexit.unregister(audit_logger.shutdown)

    return uninstall
