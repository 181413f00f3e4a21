from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None


class DeliverySender:
    def send(self, *, url: str) -> DeliveryResult:
        raise NotImplementedError
