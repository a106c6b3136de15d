"""
Route table persistence.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable

from ..errors import LoopgateError
from .models import ProxyRoute

logger = logging.getLogger("loopgate.proxy.store")


class RouteStore:
    """
    JSON file holding the array of proxy routes.

    ``is_running`` is written for inspection but always ignored on load.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, ProxyRoute]:
        """Load saved routes, all marked stopped."""
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                records = json.load(f)
            routes = {}
            for record in records:
                route = ProxyRoute.from_dict(record)
                routes[route.domain] = route
            return routes
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error loading proxy routes from {self.path}: {e}")
            return {}

    def save(self, routes: Iterable[ProxyRoute]) -> None:
        """Write the route table atomically."""
        records = [route.to_dict() for route in routes]
        tmp_path = self.path.with_suffix(".json.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise LoopgateError(f"Failed to save proxy routes to {self.path}: {e}") from e
