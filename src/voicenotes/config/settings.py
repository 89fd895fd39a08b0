from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    app_env: str = "local"
    app_log_level: str = "INFO"
    base_url: str = "http://localhost:8000"

    # Twilio (credentials are per tenant, in the conversation store)
    twilio_validate_signature: bool = True
    # When on, outbound voice notes ask Twilio to call /webhooks/twilio/status/{tenant_id}
    twilio_status_callback_enabled: bool = True

    # Media storage
    #
    # IMPORTANT: Twilio requires a publicly reachable HTTPS URL for media delivery.
    # In local dev, you typically set `MEDIA_PUBLIC_BASE_URL` to your ngrok URL.
    media_root_dir: str = "./data/media"
    media_public_base_url: str = Field(
        default="",
        validation_alias=AliasChoices("MEDIA_PUBLIC_BASE_URL", "media_public_base_url"),
    )
    media_url_signing_secret: str = Field(
        default="change-me",
        validation_alias=AliasChoices("MEDIA_URL_SIGNING_SECRET", "MEDIA_SIGNING_SECRET"),
    )
    media_url_ttl_seconds: int = 7 * 24 * 60 * 60  # 7 days

    # Voice-note transcoding (canonical target: OGG/Opus for WhatsApp)
    ffmpeg_binary: str = "ffmpeg"
    voice_note_codec: str = "libopus"
    voice_note_bitrate: str = "32k"
    voice_note_format: str = "ogg"
    voice_note_content_type: str = "audio/ogg"
    voice_note_extension: str = ".ogg"

    # Conversation store backend: "memory" | "redis"
    conversation_store: str = Field(
        default="memory",
        validation_alias=AliasChoices("CONVERSATION_STORE", "conversation_store"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_key_prefix: str = "voicenotes"

    # Redis Streams (storage-finalized events)
    redis_stream_storage_events: str = "storage_events"

    # Transcode Worker
    redis_transcode_consumer_group: str = "transcode_workers"
    redis_transcode_consumer_name: str = "transcoder-1"
    transcode_max_concurrency: int = 4

    # Reconciliation Scheduler
    reconcile_interval_seconds: float = 120.0
    reconcile_max_concurrency: int = 8
    reconcile_lock_name: str = "reconcile:lock"
    reconcile_lock_ttl_seconds: int = 10 * 60
    reconcile_worker_id: str = "reconciler-1"

    # Retry ceiling for voice notes whose artifact never shows up
    pending_max_attempts: int = 30
    pending_max_age_seconds: int = 24 * 60 * 60


settings = Settings()
