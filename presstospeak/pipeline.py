"""Voice-to-text pipeline: transcription, then best-effort rewrite.

A transcription failure ends the request. A rewrite failure never does: the
raw transcript is returned as the clean text and the result is flagged
``fallback_raw``.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import HttpError
from .logging_setup import truncate_text
from .rewrite_module import OpenAIRewriter
from .stt_module import ElevenLabsTranscriber, TranscriptionOptions


logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    START = "start"
    STT_IN_FLIGHT = "stt_in_flight"
    STT_DONE = "stt_done"
    REWRITE_IN_FLIGHT = "rewrite_in_flight"
    REWRITE_DONE = "rewrite_done"
    REWRITE_FALLBACK = "rewrite_fallback"
    RESPONSE_READY = "response_ready"


class RewriteStatus(str, Enum):
    COMPLETED = "completed"
    FALLBACK_RAW = "fallback_raw"
    SKIPPED = "skipped"


@dataclass
class VoiceToTextInput:
    audio_bytes: bytes
    file_name: str
    mime_type: Optional[str] = None
    request_id: str = "unknown"
    user_id: str = "anonymous"
    stt_options: TranscriptionOptions = field(default_factory=TranscriptionOptions)
    elevenlabs_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None


@dataclass
class VoiceToTextResult:
    raw_text: str
    clean_text: str
    stt_model_id: str
    rewrite_model: str
    rewrite_status: RewriteStatus
    stt_latency_ms: int
    rewrite_latency_ms: int
    rewrite_error: Optional[str] = None


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


class VoiceToTextPipeline:
    def __init__(
        self,
        transcriber: ElevenLabsTranscriber,
        rewriter: OpenAIRewriter,
        log_pipeline_text: bool = False,
        log_text_max_chars: int = 1200,
    ):
        self.transcriber = transcriber
        self.rewriter = rewriter
        self.log_pipeline_text = log_pipeline_text
        self.log_text_max_chars = log_text_max_chars

    def _stage(self, stage: PipelineStage, request_id: str) -> None:
        logger.debug("pipeline stage %s", stage.value, extra={"stage": stage.value, "pipeline_request_id": request_id})

    def _log_text(self, label: str, text: str) -> None:
        if self.log_pipeline_text:
            logger.info("%s transcript", label, extra={"text": truncate_text(text, self.log_text_max_chars)})

    async def process(self, data: VoiceToTextInput) -> VoiceToTextResult:
        self._stage(PipelineStage.START, data.request_id)

        self._stage(PipelineStage.STT_IN_FLIGHT, data.request_id)
        stt_started_at = time.perf_counter()
        transcription = await self.transcriber.transcribe(
            data.audio_bytes,
            data.file_name,
            mime_type=data.mime_type,
            options=data.stt_options,
            api_key=data.elevenlabs_api_key,
        )
        stt_latency_ms = _elapsed_ms(stt_started_at)
        self._stage(PipelineStage.STT_DONE, data.request_id)
        self._log_text("raw", transcription.raw_text)

        self._stage(PipelineStage.REWRITE_IN_FLIGHT, data.request_id)
        rewrite_started_at = time.perf_counter()
        try:
            rewrite = await self.rewriter.rewrite(transcription.raw_text, api_key=data.openai_api_key)
        except Exception as error:  # any rewrite failure degrades to the raw transcript
            message = error.message if isinstance(error, HttpError) else str(error) or type(error).__name__
            logger.warning(
                "rewrite failed; returning raw transcript",
                extra={
                    "error": message,
                    "status_code": getattr(error, "status_code", None),
                    "upstream": getattr(error, "log_context", None),
                },
            )
            self._stage(PipelineStage.REWRITE_FALLBACK, data.request_id)
            result = VoiceToTextResult(
                raw_text=transcription.raw_text,
                clean_text=transcription.raw_text,
                stt_model_id=transcription.model_id,
                rewrite_model=self.rewriter.model,
                rewrite_status=RewriteStatus.FALLBACK_RAW,
                stt_latency_ms=stt_latency_ms,
                rewrite_latency_ms=_elapsed_ms(rewrite_started_at),
                rewrite_error=message,
            )
        else:
            self._stage(PipelineStage.REWRITE_DONE, data.request_id)
            result = VoiceToTextResult(
                raw_text=transcription.raw_text,
                clean_text=rewrite.clean_text,
                stt_model_id=transcription.model_id,
                rewrite_model=rewrite.model,
                rewrite_status=RewriteStatus.SKIPPED if rewrite.skipped else RewriteStatus.COMPLETED,
                stt_latency_ms=stt_latency_ms,
                rewrite_latency_ms=_elapsed_ms(rewrite_started_at),
            )
            self._log_text("clean", result.clean_text)

        self._stage(PipelineStage.RESPONSE_READY, data.request_id)
        return result
