from __future__ import annotations

# Listeners install their own URLconf per request (see maintenance.servers).
urlpatterns: list = []
