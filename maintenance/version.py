from __future__ import annotations

import logging
import os
import platform


# Overridden at image build time.
VERSION = os.environ.get("MAINTENANCE_VERSION", "0.1.0")
GIT_COMMIT = os.environ.get("MAINTENANCE_GIT_COMMIT", "n/a")
BUILD_DATE = os.environ.get("MAINTENANCE_BUILD_DATE", "n/a")


def print_version(logger: logging.Logger) -> None:
    logger.info("Python Version: %s", platform.python_version())
    logger.info("Python OS/Arch: %s/%s", platform.system().lower(), platform.machine())
    logger.info("Operator Version: %s", VERSION)
    logger.info("Git Commit: %s", GIT_COMMIT)
    logger.info("Build Date: %s", BUILD_DATE)
