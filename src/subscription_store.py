"""
JSON file backed subscription store.

Subscriptions are kept as a list of {id, name, url} objects in a single JSON
file. Every write replaces the file atomically.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from models import Subscription

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    status_code = 500


class InvalidSubscriptionError(SubscriptionError):
    status_code = 400


class DuplicateSubscriptionError(SubscriptionError):
    status_code = 409


class SubscriptionNotFoundError(SubscriptionError):
    status_code = 404


def validate_subscription_url(url: Optional[str]) -> str:
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidSubscriptionError(
            "Invalid or missing URL in request body. Must be a valid HTTP/HTTPS URL.")

    url = url.strip()
    try:
        parsed = urlparse(url)
    except ValueError:
        raise InvalidSubscriptionError("Invalid URL format")

    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise InvalidSubscriptionError(
            "Invalid or missing URL in request body. Must be a valid HTTP/HTTPS URL.")
    return url


class SubscriptionStore:
    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def initialize(self):
        """Make sure the data directory and a valid subscriptions file exist"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Data directory ensured at: {self.path.parent}")

        if not self.path.exists():
            logger.info(
                f"Subscriptions file not found, creating a new empty one at: {self.path}")
            self._write([])
            return

        try:
            self._read()
            logger.info(f"Subscriptions data file found and valid at: {self.path}")
        except (json.JSONDecodeError, ValueError):
            logger.error(
                f"Subscriptions file at {self.path} is corrupted (invalid JSON). Creating a new empty one.")
            self._write([])

    def list(self) -> List[Subscription]:
        with self._lock:
            return self._read()

    def get(self, subscription_id: str) -> Optional[Subscription]:
        for subscription in self.list():
            if subscription.id == subscription_id:
                return subscription
        return None

    def add(self, url: str, name: Optional[str] = None) -> Subscription:
        url = validate_subscription_url(url)

        with self._lock:
            subscriptions = self._read()
            if any(sub.url == url for sub in subscriptions):
                logger.warning(f"Subscription URL already exists: {url}")
                raise DuplicateSubscriptionError("Subscription URL already exists.")

            subscription = Subscription(
                id=str(uuid.uuid4()),
                name=name or urlparse(url).hostname or url,
                url=url
            )
            subscriptions.append(subscription)
            self._write(subscriptions)

        logger.info(f"Successfully added subscription: {subscription.id} ({subscription.url})")
        return subscription

    def remove(self, subscription_id: str):
        with self._lock:
            subscriptions = self._read()
            remaining = [sub for sub in subscriptions if sub.id != subscription_id]
            if len(remaining) == len(subscriptions):
                logger.warning(
                    f"Subscription ID not found for deletion: {subscription_id}")
                raise SubscriptionNotFoundError(
                    "Subscription not found with the specified ID.")
            self._write(remaining)

        logger.info(f"Successfully deleted subscription with ID: {subscription_id}")

    def _read(self) -> List[Subscription]:
        # A missing file simply means nothing has been added yet
        if not self.path.exists():
            return []

        with open(self.path, 'r', encoding='utf-8') as fh:
            data = json.load(fh)

        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON list in {self.path}")

        subscriptions = []
        for entry in data:
            # Older files only stored {id, url}
            if isinstance(entry, dict) and entry.get("url") and not entry.get("name"):
                entry = {**entry, "name": urlparse(str(entry["url"])).hostname or entry["url"]}
            try:
                subscriptions.append(Subscription(**entry))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid subscription entry {entry!r}: {e}")
        return subscriptions

    def _write(self, subscriptions: List[Subscription]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".subscriptions-", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                json.dump([sub.model_dump() for sub in subscriptions], fh, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
