"""
Configuration models for the voice ordering service.

Pydantic v2 models; every section has defaults so an empty YAML file yields a
working (in-memory) service.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly voice assistant taking food orders for a restaurant. "
    "Keep replies short and conversational because they are spoken aloud. "
    "Confirm what was added or removed, mention the running total when it changes, "
    "and ask a clarifying question when the request is ambiguous. "
    "Only offer items that appear on the menu."
)


class SessionConfig(BaseModel):
    idle_timeout_minutes: float = Field(default=30.0)
    cleanup_interval_seconds: float = Field(default=300.0)
    max_turns: int = Field(default=50)


class ConversationConfig(BaseModel):
    window_size: int = Field(default=10)
    max_response_tokens: int = Field(default=500)
    temperature: float = Field(default=0.7)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)


class RateLimitConfig(BaseModel):
    requests_per_minute: int = Field(default=30)
    requests_per_hour: int = Field(default=500)
    audio_minutes_per_hour: int = Field(default=60)
    session_requests_per_minute: int = Field(default=10)
    # Per-customer limit is requests_per_minute // customer_divisor (at least 1)
    customer_divisor: int = Field(default=5)
    stt_requests_per_minute: int = Field(default=50)
    llm_requests_per_minute: int = Field(default=60)
    tts_requests_per_minute: int = Field(default=50)
    high_load_threshold: float = Field(default=0.8)
    inactive_bucket_ttl_seconds: float = Field(default=3600.0)


class AudioConfig(BaseModel):
    max_file_size_mb: int = Field(default=25)
    max_duration_seconds: int = Field(default=300)
    supported_formats: List[str] = Field(
        default_factory=lambda: ["wav", "mp3", "m4a", "webm", "mp4", "mpeg", "mpga", "ogg", "oga", "pcm16"]
    )
    # None means "<system temp>/<temp_dir_name>"
    temp_dir: Optional[str] = None
    temp_dir_name: str = Field(default="voice-ai")
    retention_seconds: float = Field(default=3600.0)
    cleanup_interval_seconds: float = Field(default=3600.0)
    pcm_sample_rate_hz: int = Field(default=24000)


class PipelineConfig(BaseModel):
    max_attempts: int = Field(default=3)
    retry_delay_seconds: float = Field(default=1.0)
    retry_max_delay_seconds: float = Field(default=8.0)
    request_timeout_seconds: float = Field(default=60.0)
    tts_cache_size: int = Field(default=128)
    synthesize_responses: bool = Field(default=True)


class OpenAIProviderConfig(BaseModel):
    api_key: Optional[str] = None
    organization: Optional[str] = None
    base_url: str = Field(default="https://api.openai.com/v1")
    stt_model: str = Field(default="whisper-1")
    chat_model: str = Field(default="gpt-4o-mini")
    tts_model: str = Field(default="tts-1")
    voice: str = Field(default="alloy")
    tts_response_format: str = Field(default="mp3")
    request_timeout_sec: float = Field(default=30.0)


class ProvidersConfig(BaseModel):
    openai: OpenAIProviderConfig = Field(default_factory=OpenAIProviderConfig)


class RealtimeConfig(BaseModel):
    sessions_url: str = Field(default="https://api.openai.com/v1/realtime/sessions")
    model: str = Field(default="gpt-4o-realtime-preview-2025-06-03")
    voice: str = Field(default="ash")
    modalities: List[str] = Field(default_factory=lambda: ["text", "audio"])
    instructions: Optional[str] = None
    turn_detection_type: str = Field(default="server_vad")
    vad_threshold: float = Field(default=0.5)
    prefix_padding_ms: int = Field(default=300)
    silence_duration_ms: int = Field(default=500)
    input_audio_format: str = Field(default="pcm16")
    output_audio_format: str = Field(default="pcm16")
    sample_rate_hz: int = Field(default=24000)
    token_ttl_seconds: int = Field(default=3600)
    max_tokens_per_hour: int = Field(default=10)
    allowed_session_types: List[str] = Field(
        default_factory=lambda: ["voice_ordering", "voice_support", "voice_feedback"]
    )
    grace_period_seconds: float = Field(default=30.0)
    # Local segmentation of streamed PCM16 frames
    speech_threshold: int = Field(default=500)
    vad_aggressiveness: int = Field(default=1)
    min_speech_ms: int = Field(default=200)
    max_segment_ms: int = Field(default=15000)
    request_timeout_sec: float = Field(default=15.0)


class OrderConfig(BaseModel):
    tax_rate: float = Field(default=0.0825)
    service_fee_rate: float = Field(default=0.029)
    service_fee_fixed: float = Field(default=0.30)
    minimum_total: float = Field(default=0.50)
    require_email: bool = Field(default=True)


class MenuItemConfig(BaseModel):
    id: str
    name: str
    price: float
    category: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    available: bool = Field(default=True)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")


class AppConfig(BaseModel):
    session: SessionConfig = Field(default_factory=SessionConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    order: OrderConfig = Field(default_factory=OrderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    menu: List[MenuItemConfig] = Field(default_factory=list)
