"""The ``/_status`` endpoint reporting the application's seed data and state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .api import Endpoint, json_response, status_response

STATUS_PATH = "/_status"


@dataclass
class AppData:
    """Body of the status response."""

    seed_data: Any
    app_status: Any


class StatusController(Endpoint):
    """Serves ``GET /_status`` from an app repository exposing ``get_app()``.

    The returned app provides ``seed_data`` and ``status``.
    """

    path = STATUS_PATH

    def __init__(self, app_repository):
        self.app_repository = app_repository

    def format_as_relative_link(self, **kwargs):
        return STATUS_PATH

    def get(self, request, params):
        try:
            app = self.app_repository.get_app()
        except Exception as err:  # any repository failure is reported as a server error
            return status_response(500, err)
        return json_response(AppData(seed_data=app.seed_data, app_status=app.status))