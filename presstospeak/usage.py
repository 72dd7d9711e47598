"""Usage metering placeholder.

Events are only logged; nothing is persisted yet.
"""
import logging
from dataclasses import asdict, dataclass


usage_logger = logging.getLogger("presstospeak.usage-metering")


@dataclass
class UsageEvent:
    request_id: str
    user_id: str
    audio_bytes: int
    raw_characters: int
    clean_characters: int
    stt_latency_ms: int
    rewrite_latency_ms: int
    is_authenticated: bool
    auth_source: str


async def record_usage_event(event: UsageEvent) -> None:
    usage_logger.info("usage event captured (placeholder)", extra={"usage": asdict(event)})
