from __future__ import annotations

import logging
import threading
from typing import Callable

from django.http import HttpRequest, HttpResponse
from django.urls import path


logger = logging.getLogger(__name__)


# A check raises to report failure.
Check = Callable[[HttpRequest], None]


def ping(request: HttpRequest) -> None:
    return None


class HealthChecks:
    """Named liveness and readiness checks served on /healthz and /readyz."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._healthz: dict[str, Check] = {}
        self._readyz: dict[str, Check] = {}

    def add_healthz_check(self, name: str, check: Check) -> None:
        self._add(self._healthz, name, check)

    def add_readyz_check(self, name: str, check: Check) -> None:
        self._add(self._readyz, name, check)

    def _add(self, checks: dict[str, Check], name: str, check: Check) -> None:
        if not name or "/" in name:
            raise ValueError(f"invalid check name {name!r}")
        with self._lock:
            if name in checks:
                raise ValueError(f"check {name!r} is already registered")
            checks[name] = check

    def healthz_view(self, request: HttpRequest, name: str = "") -> HttpResponse:
        return self._serve(request, "healthz", self._healthz, name)

    def readyz_view(self, request: HttpRequest, name: str = "") -> HttpResponse:
        return self._serve(request, "readyz", self._readyz, name)

    def urlpatterns(self) -> list:
        return [
            path("healthz", self.healthz_view),
            path("healthz/<str:name>", self.healthz_view),
            path("readyz", self.readyz_view),
            path("readyz/<str:name>", self.readyz_view),
        ]

    def _serve(self, request: HttpRequest, kind: str, checks: dict[str, Check], name: str) -> HttpResponse:
        with self._lock:
            selected = dict(checks)
        if name:
            if name not in selected:
                return HttpResponse(f"no such {kind} check: {name}\n", status=404, content_type="text/plain; charset=utf-8")
            selected = {name: selected[name]}
        elif not selected:
            # No checks registered yet: the process is up.
            selected = {"ping": ping}

        lines: list[str] = []
        failed = False
        for check_name in sorted(selected):
            try:
                selected[check_name](request)
            except Exception as e:
                failed = True
                lines.append(f"[-]{check_name} failed: {e}")
                logger.info("%s check failed name=%s error=%s", kind, check_name, e)
            else:
                lines.append(f"[+]{check_name} ok")

        if failed:
            lines.append(f"{kind} check failed")
            return HttpResponse("\n".join(lines) + "\n", status=500, content_type="text/plain; charset=utf-8")
        if "verbose" in request.GET:
            lines.append(f"{kind} check passed")
            return HttpResponse("\n".join(lines) + "\n", content_type="text/plain; charset=utf-8")
        return HttpResponse("ok", content_type="text/plain; charset=utf-8")
