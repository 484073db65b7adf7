from __future__ import annotations


URLCONF_ENVIRON_KEY = "maintenance.urlconf"


class ServerURLConfMiddleware:
    """Route the request with the URLconf of the listener that accepted it."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        urlconf = request.META.get(URLCONF_ENVIRON_KEY)
        if urlconf is not None:
            request.urlconf = urlconf
        return self.get_response(request)
