from typing import Dict, List
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import logging

logger = logging.getLogger(__name__)

DEFAULT_DISTRACTION_DOMAINS: Dict[str, str] = {
    # Social media
    "facebook.com": "social_media",
    "twitter.com": "social_media",
    "x.com": "social_media",
    "instagram.com": "social_media",
    "tiktok.com": "social_media",
    "linkedin.com/feed": "social_media",
    "reddit.com": "social_media",

    # Entertainment
    "youtube.com/watch": "entertainment",
    "netflix.com": "entertainment",
    "hulu.com": "entertainment",
    "twitch.tv": "entertainment",
    "spotify.com": "entertainment",

    # Shopping
    "amazon.com": "shopping",
    "ebay.com": "shopping",
    "aliexpress.com": "shopping",
    "etsy.com": "shopping",

    # News
    "cnn.com": "news",
    "bbc.com": "news",
    "news.google.com": "news",
    "reuters.com": "news",
    "nytimes.com": "news",
}

DEFAULT_BLACKLIST: List[str] = [
    "9gag", "buzzfeed", "pinterest", "tumblr", "disneyplus", "primevideo",
    "steampowered.com", "shopping", "sports", "celebrity", "games",
]

DEFAULT_PRODUCTIVITY_WHITELIST: List[str] = [
    "github.com", "gitlab.com", "stackoverflow.com", "docs.", "notion.so",
    "localhost", "127.0.0.1", "google.com/search", "wikipedia.org",
    "figma.com", "overleaf.com", "scholar.google", "jira", "confluence",
    "vscode", "pycharm", "terminal",
]

class SignalConfig(BaseModel):
    """Event-driven signal source configuration"""
    visibility_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=120.0,
        description="Seconds the work surface may stay hidden before it counts as a tab switch"
    )
    idle_timeout_seconds: float = Field(
        default=90.0,
        ge=0.0,
        le=3600.0,
        description="Seconds without user input before the user counts as idle"
    )
    distraction_domains: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_DISTRACTION_DOMAINS),
        description="Blacklisted host (optionally with a path prefix) -> distraction category"
    )
    blacklist: List[str] = Field(
        default_factory=lambda: list(DEFAULT_BLACKLIST),
        description="Additional blacklisted substrings (category 'other')"
    )
    productivity_whitelist: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PRODUCTIVITY_WHITELIST),
        description="General productivity contexts that are never irrelevant"
    )

class HeartbeatConfig(BaseModel):
    """Periodic multimodal check configuration"""
    interval_seconds: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description="Seconds between multimodal classification ticks"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Classification attempts per tick"
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay between classification attempts (doubles per attempt)"
    )
    camera_enabled: bool = Field(
        default=False,
        description="Whether to capture a camera frame on each tick"
    )

class SessionConfig(BaseModel):
    """Focus session configuration"""
    sustained_drift_seconds: float = Field(
        default=300.0,
        ge=0.0,
        le=7200.0,
        description="Continuous drift before a voice intervention starts"
    )

class DialogueConfig(BaseModel):
    """Voice intervention configuration"""
    settle_delay_seconds: float = Field(
        default=1.5,
        ge=0.0,
        le=30.0,
        description="Pause after playback before listening again"
    )
    inactivity_timeout_seconds: float = Field(
        default=45.0,
        ge=0.0,
        le=600.0,
        description="Maximum time spent waiting for the user before the dialogue ends"
    )
    error_restart_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Pause before recording again after a recoverable error"
    )
    max_consecutive_errors: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Recoverable errors in a row before the dialogue gives up"
    )
    auto_restart: bool = Field(
        default=True,
        description="Re-open the microphone automatically between turns"
    )
    opening_message: str = Field(
        default="Captain, it seems we've veered off course. Let me check on our current situation.",
        description="Assistant turn that opens every intervention"
    )

class MonitorConfig(BaseSettings):
    """Main configuration for the drift monitor"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MINDSHIP_",
        env_nested_delimiter="__",
        extra="ignore"
    )

    signals: SignalConfig = SignalConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()
    session: SessionConfig = SessionConfig()
    dialogue: DialogueConfig = DialogueConfig()

    def describe(self) -> Dict[str, float]:
        """Timing summary for startup logging"""
        return {
            "visibility_grace_seconds": self.signals.visibility_grace_seconds,
            "idle_timeout_seconds": self.signals.idle_timeout_seconds,
            "heartbeat_interval_seconds": self.heartbeat.interval_seconds,
            "sustained_drift_seconds": self.session.sustained_drift_seconds,
            "dialogue_settle_delay_seconds": self.dialogue.settle_delay_seconds,
            "dialogue_inactivity_timeout_seconds": self.dialogue.inactivity_timeout_seconds,
        }

# Global configuration instance
config = MonitorConfig()
