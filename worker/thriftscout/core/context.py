from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from thriftscout.core.errors import PartialIngestFailure


@dataclass
class SearchContext:
    """State for a single search call, passed explicitly down the pipeline."""

    owner_id: Optional[str]
    search_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started: float = field(default_factory=time.monotonic)

    cache_hit: bool = False
    provider_results: int = 0
    stored: int = 0
    skipped: List[PartialIngestFailure] = field(default_factory=list)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)
