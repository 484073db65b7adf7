from __future__ import annotations

import logging
import os
import signal
import threading

from maintenance.runnables import RunContext


logger = logging.getLogger(__name__)


def setup_signal_handler(signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)) -> RunContext:
    """Return a context cancelled by the first SIGINT/SIGTERM. A second signal exits with status 1."""

    ctx = RunContext()
    received = 0

    def _request_stop(signum, _frame):
        nonlocal received
        received += 1
        if received > 1:
            logger.error("second signal received, exiting signal=%s", signal.Signals(signum).name)
            os._exit(1)
        logger.info("shutdown signal received signal=%s", signal.Signals(signum).name)
        # Cancel off the signal frame: callbacks take locks.
        threading.Thread(target=ctx.cancel, name="signal-cancel", daemon=True).start()

    for sig in signals:
        signal.signal(sig, _request_stop)
    return ctx
