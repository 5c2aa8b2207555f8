from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from brandtrust.core.clock import Clock
from brandtrust.core.config import Settings
from brandtrust.services.push import PushSender


@dataclass(slots=True)
class JobContext:
    repository: Any
    settings: Settings
    clock: Clock
    push_sender: PushSender
