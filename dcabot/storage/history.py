from __future__ import annotations

import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from dcabot.errors import CorruptStoreError
from dcabot.jobs.models import OrderPassed
from dcabot.storage.files import parse_json, read_text, write_json

LOGGER = logging.getLogger(__name__)

HISTORY_FILE_NAME = "history.json"


class OrderHistory:
    """
    Append-only record of executed orders, stored as ``{"orders": [...]}``.

    The broker only keeps a year of orders, this file keeps them for good.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.lock = threading.Lock()

    @classmethod
    def in_dir(cls, data_dir: str | Path, file_name: str = HISTORY_FILE_NAME) -> "OrderHistory":
        return cls(Path(data_dir) / file_name)

    def load(self) -> list[OrderPassed]:
        if not self.path.exists():
            return []
        content = read_text(self.path)
        if not content.strip():
            return []
        raw = parse_json(self.path, content)
        if not isinstance(raw, dict):
            raise CorruptStoreError(f"{self.path} must hold a JSON object")
        orders = raw.get("orders", [])
        if not isinstance(orders, list):
            raise CorruptStoreError(f"'orders' in {self.path} must be a list")
        try:
            return [OrderPassed.model_validate(item) for item in orders]
        except ValidationError as exc:
            raise CorruptStoreError(f"Invalid order record in {self.path}: {exc}") from exc

    def append(self, order: OrderPassed) -> None:
        with self.lock:
            orders = self.load()
            orders.append(order)
            write_json(self.path, {"orders": [item.to_json() for item in orders]})
        LOGGER.info("Recorded order %s %s x%s @ %.4f", order.id, order.args.symbol, order.args.quantity, order.price)
