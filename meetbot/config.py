"""
Meet Bot Configuration.

Centralizes all configuration for the meeting bot including:
- Browser launch settings
- Join flow retry budgets and admission timing
- Auto-termination monitor timing (presence, silence, page health)
- Recording chunking and duration caps
- Voice participation (capture batching, conversation cool-down)
- Provider credentials and endpoints

Values come from dataclass defaults, then an optional YAML file, then
environment variables.
"""

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and helpful HR representative who is onboarding new employees.\n"
    "Your role is to:\n"
    "- Welcome new employees warmly\n"
    "- Answer questions about the company, policies, and procedures\n"
    "- Guide them through the onboarding process\n"
    "- Be conversational, approachable, and professional\n"
    "- Keep responses brief (1-2 sentences) and natural\n"
    "- Act like a helpful chat bot that engages in conversation\n"
    "\n"
    "Always respond in a conversational, friendly manner. If someone greets you, "
    "greet them back warmly. If they ask questions, answer helpfully. "
    "Engage naturally in the conversation."
)


@dataclass
class BrowserConfig:
    """Chromium launch configuration."""

    headless: bool = True
    # Extra Chromium flags appended to the defaults in browser.py
    extra_args: list[str] = field(default_factory=list)
    user_agent: Optional[str] = None
    viewport_width: int = 1280
    viewport_height: int = 720

    # Navigation settle time after networkidle
    settle_seconds: float = 10.0
    navigation_timeout_ms: int = 60000


@dataclass
class JoinConfig:
    """Join flow configuration."""

    default_bot_name: str = "ScreenApp Notetaker"

    # Mandatory steps: name entry and join request
    name_entry_attempts: int = 3
    join_request_attempts: int = 3
    step_retry_seconds: float = 15.0
    # Pause between pre-join steps so the lobby UI can settle
    step_settle_seconds: float = 10.0

    # Best-effort "continue without microphone and camera" prompt
    device_prompt_attempts: int = 1
    device_prompt_timeout_seconds: float = 30.0
    device_prompt_retry_seconds: float = 15.0

    # Admission wait
    join_wait_minutes: float = 10.0
    admission_poll_seconds: float = 20.0
    baseline_probe_timeout_seconds: float = 5.0

    # Welcome dialogs ("Got it") after joining
    dialog_unchanged_rounds: int = 2

    greeting: str = (
        "Hello, I am the meeting bot and I have joined the meeting. "
        "I will be recording this session."
    )


@dataclass
class MonitorConfig:
    """Auto-termination monitor configuration."""

    # Both presence and silence monitors start after this grace delay
    activate_after_minutes: float = 1.0
    inactivity_limit_minutes: float = 5.0

    presence_poll_seconds: float = 5.0
    presence_max_failures: int = 10
    min_participants: int = 2

    silence_sample_ms: int = 100
    silence_threshold: float = 10.0
    silence_fft_size: int = 256

    page_check_seconds: float = 10.0
    dialog_dismiss_seconds: float = 2.0
    dialog_dismiss_max_errors: int = 10


@dataclass
class RecordingConfig:
    """Recording pipeline configuration."""

    max_duration_minutes: float = 180.0
    # Extra time allowed after the cap for in-flight chunks
    processing_grace_minutes: float = 0.2
    chunk_ms: int = 2000
    primary_mime_type: str = "video/webm;codecs=vp8,opus"
    fallback_mime_type: str = "video/webm;codecs=vp9"

    output_dir: Path = Path.home() / ".local/share/meetbot/recordings"
    screenshots_dir: Path = Path.home() / ".local/share/meetbot/screenshots"


@dataclass
class VoiceConfig:
    """Voice participation configuration."""

    enabled: bool = True
    speak_greeting: bool = True
    live_transcription: bool = True

    # Capture path
    sample_rate: int = 16000
    processor_buffer_size: int = 4096
    initial_delay_seconds: float = 5.0
    attach_attempts: int = 10
    attach_retry_seconds: float = 5.0
    check_interval_seconds: float = 2.0
    min_batch_seconds: float = 2.0
    min_submit_interval_seconds: float = 5.0
    activity_window_seconds: float = 5.0
    activity_mean_threshold: float = 0.001
    activity_peak_threshold: float = 0.01
    min_transcript_chars: int = 2

    # Conversation
    cooldown_seconds: float = 10.0
    fallback_response: str = "I'm here to help with your onboarding. How can I assist you today?"


@dataclass
class ProviderConfig:
    """External provider endpoints and credentials."""

    deepgram_api_key: str = ""
    deepgram_url: str = "https://api.deepgram.com/v1"
    deepgram_ws_url: str = "wss://api.deepgram.com/v1/listen"
    stt_model: str = "nova-2"
    stt_language: str = "en-US"
    tts_model: str = "aura-2-odysseus-en"
    tts_sample_rate: int = 24000
    live_endpointing_ms: int = 500

    openai_api_key: str = ""
    openai_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 150
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    status_api_url: str = ""
    request_timeout_seconds: float = 30.0


@dataclass
class MeetBotConfig:
    """Main configuration for the meeting bot."""

    browser: BrowserConfig = field(default_factory=BrowserConfig)
    join: JoinConfig = field(default_factory=JoinConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        for dir_path in [self.recording.output_dir, self.recording.screenshots_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


# Environment variable -> (section, attribute)
ENV_OVERRIDES = {
    "DEEPGRAM_API_KEY": ("providers", "deepgram_api_key"),
    "OPENAI_API_KEY": ("providers", "openai_api_key"),
    "MEETBOT_STATUS_API_URL": ("providers", "status_api_url"),
    "MEETBOT_LLM_MODEL": ("providers", "llm_model"),
    "MEETBOT_HEADLESS": ("browser", "headless"),
    "MEETBOT_JOIN_WAIT_MINUTES": ("join", "join_wait_minutes"),
    "MEETBOT_MAX_DURATION_MINUTES": ("recording", "max_duration_minutes"),
    "MEETBOT_INACTIVITY_LIMIT_MINUTES": ("monitor", "inactivity_limit_minutes"),
    "MEETBOT_ACTIVATE_AFTER_MINUTES": ("monitor", "activate_after_minutes"),
    "MEETBOT_RECORDINGS_DIR": ("recording", "output_dir"),
    "MEETBOT_VOICE_ENABLED": ("voice", "enabled"),
}


def _coerce(current: Any, value: Any) -> Any:
    """Coerce a raw YAML/env value to the type of the current field value."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path):
        return Path(value).expanduser()
    return value


def _apply_section(section: Any, values: dict) -> None:
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {type(section).__name__}.{key}")
            continue
        setattr(section, key, _coerce(getattr(section, key), value))


def load_config_file(path: Path, config: Optional[MeetBotConfig] = None) -> MeetBotConfig:
    """
    Load a YAML config file on top of the given (or default) config.

    The file maps section names (browser, join, monitor, recording, voice,
    providers) to dicts of field overrides.

    Args:
        path: Path to the YAML file
        config: Config to update in place (a new default config if None)

    Returns:
        The updated config
    """
    config = config or MeetBotConfig()
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")

    for section_name, values in data.items():
        section = getattr(config, section_name, None)
        if section is None or not is_dataclass(section):
            logger.warning(f"Ignoring unknown config section: {section_name}")
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section_name}' must be a mapping")
        _apply_section(section, values)

    logger.info(f"Loaded config from {path}")
    return config


def apply_env_overrides(config: MeetBotConfig) -> MeetBotConfig:
    """Apply environment variable overrides to the config."""
    for env_name, (section_name, attr) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        section = getattr(config, section_name)
        setattr(section, attr, _coerce(getattr(section, attr), value))
    return config


# Global config instance
_config: Optional[MeetBotConfig] = None


def get_config() -> MeetBotConfig:
    """Get the global config instance."""
    global _config
    if _config is None:
        _config = MeetBotConfig()
        config_file = os.environ.get("MEETBOT_CONFIG")
        if config_file:
            load_config_file(Path(config_file).expanduser(), _config)
        apply_env_overrides(_config)
    return _config


def update_config(**kwargs) -> MeetBotConfig:
    """Update config with new values."""
    global _config
    if _config is None:
        _config = MeetBotConfig(**kwargs)
    else:
        for key, value in kwargs.items():
            if hasattr(_config, key):
                setattr(_config, key, value)
    return _config


def reset_config() -> None:
    """Drop the global config so the next get_config() rebuilds it."""
    global _config
    _config = None
