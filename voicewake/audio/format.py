from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFormat:
    sample_rate: int
    channels: int

    @property
    def is_valid(self) -> bool:
        return self.sample_rate > 0 and self.channels > 0
