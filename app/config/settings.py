import json
import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
import logging

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.json")

class RedisConfig(BaseModel):
    url: str = Field(default="redis://redis:6379", description="Redis connection URL")
    socket_timeout: int = Field(default=5, description="Redis socket timeout in seconds")

class RateLimitConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable rate limiting")
    max_requests: int = Field(default=30, ge=1, description="Max requests per window")
    window_seconds: int = Field(default=60, ge=1, description="Rate limit window in seconds")

class MediaConfig(BaseModel):
    download_dir: str = Field(default="downloads", description="Directory for disk-target downloads")
    read_chunk_size: int = Field(default=64 * 1024, ge=1024, description="Bytes read per output chunk")
    upstream_chunk_bytes: int = Field(default=10 * 1024 * 1024, ge=64 * 1024, description="Size of each ranged upstream request")
    upstream_timeout: float = Field(default=30.0, gt=0, description="Upstream HTTP timeout in seconds")

class FFmpegConfig(BaseModel):
    binary: str = Field(default="ffmpeg", description="ffmpeg executable")
    loglevel: str = Field(default="error", description="ffmpeg -loglevel value")
    mp3_bitrate: str = Field(default="192k", description="Bitrate for mp3 re-encoding")
    mux_format: str = Field(default="mp4", description="Container for muxed video+audio output")
    movflags: str = Field(default="frag_keyframe+empty_moov", description="mp4 flags for non-seekable output")
    exit_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait for ffmpeg exit after EOF")

class YtDlpConfig(BaseModel):
    binary: str = Field(default="yt-dlp", description="yt-dlp executable")
    js_runtime: Optional[str] = Field(default=None, description="JS runtime path (e.g., deno:/usr/local/bin/deno)")
    socket_timeout: int = Field(default=10, ge=1, description="Socket timeout for yt-dlp")
    retries: int = Field(default=3, ge=0, description="Number of retries for yt-dlp")
    info_timeout: float = Field(default=30.0, gt=0, description="Timeout for variant extraction")
    enable_live_streams: bool = Field(default=False, description="Allow live streams")

class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="%(message)s", description="Log format")
    enable_rich: bool = Field(default=True, description="Enable rich console logging")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

class I18nConfig(BaseModel):
    default_locale: str = Field(default="en", description="Default locale")
    supported_locales: list = Field(default=["en", "ja"], description="Supported locales")

class ApiConfig(BaseModel):
    title: str = Field(default="Media Delivery Gateway", description="API title")
    description: str = Field(default="Stream, mux and persist remote media", description="API description")
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    debug: bool = Field(default=False, description="Enable debug mode (exposes /docs)")

class Config(BaseModel):
    """Main configuration model"""
    redis: RedisConfig = Field(default_factory=RedisConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    ytdlp: YtDlpConfig = Field(default_factory=YtDlpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    i18n: I18nConfig = Field(default_factory=I18nConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def load_from_file(cls, config_path: str = "config.json") -> "Config":
        """Load configuration from JSON file"""

        if os.path.exists(config_path):
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    config_data = json.load(f)
                logger.info(f"Configuration loaded from {config_path}")
                return cls(**config_data)
            except Exception as e:
                logger.error(f"Failed to load config from {config_path}: {str(e)}")
                logger.info("Using default configuration")
        else:
            logger.warning(f"Config file {config_path} not found, using defaults")

        return cls()

    @classmethod
    def load_from_env(cls) -> "Config":
        """Load configuration from environment variables (fallback)"""
        config_data = {}

        # Redis
        if os.getenv("REDIS_URL") is not None:
            config_data["redis"] = {"url": os.getenv("REDIS_URL")}

        # Rate limiting
        rate_limit = {}
        if os.getenv("RATE_LIMIT_REQUESTS"):
            rate_limit["max_requests"] = int(os.getenv("RATE_LIMIT_REQUESTS"))
        if os.getenv("RATE_LIMIT_WINDOW"):
            rate_limit["window_seconds"] = int(os.getenv("RATE_LIMIT_WINDOW"))
        if rate_limit:
            config_data["rate_limit"] = rate_limit

        # Media
        if os.getenv("DOWNLOAD_DIR"):
            config_data["media"] = {"download_dir": os.getenv("DOWNLOAD_DIR")}

        # ffmpeg
        if os.getenv("FFMPEG_BINARY"):
            config_data["ffmpeg"] = {"binary": os.getenv("FFMPEG_BINARY")}

        # yt-dlp
        ytdlp = {}
        if os.getenv("YT_DLP_BINARY"):
            ytdlp["binary"] = os.getenv("YT_DLP_BINARY")
        if os.getenv("YT_DLP_JS_RUNTIME"):
            ytdlp["js_runtime"] = os.getenv("YT_DLP_JS_RUNTIME")
        if ytdlp:
            config_data["ytdlp"] = ytdlp

        # Logging
        if os.getenv("LOG_LEVEL"):
            config_data["logging"] = {"level": os.getenv("LOG_LEVEL")}

        # i18n
        if os.getenv("DEFAULT_LOCALE"):
            config_data["i18n"] = {"default_locale": os.getenv("DEFAULT_LOCALE")}

        return cls(**config_data) if config_data else cls()

    def save_to_file(self, config_path: str = "config.json"):
        """Save configuration to JSON file"""
        try:
            with open(config_path, 'w', encoding='utf-8') as f:
                json.dump(self.model_dump(exclude_none=True), f, indent=2, ensure_ascii=False)
            logger.info(f"Configuration saved to {config_path}")
        except Exception as e:
            logger.error(f"Failed to save config to {config_path}: {str(e)}")

def load_config() -> Config:
    """Load configuration with priority: config.json > env vars > defaults"""
    if os.path.exists(CONFIG_PATH):
        return Config.load_from_file(CONFIG_PATH)
    else:
        logger.info(f"Config file not found at {CONFIG_PATH}, checking environment variables")
        return Config.load_from_env()

# Global config instance
config = load_config()
