"""Client tunables.

Learn: The browser client hard-codes these; keeping them in one
dataclass lets tests shrink windows and lets the CLI expose them.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ClientConfig:
    ws_path: str = "/ws"
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    max_attempts: int = 5
    dedup_window_ms: int = 1000
    error_notice_interval_ms: int = 5000
    ai_notice_confidence: float = 0.8
