"""
Configuration for senseflow.

Values come from three places, highest priority first:
    1. Environment variables (SENSEFLOW_SYNTH_URL, SENSEFLOW_ALIGNER_URL,
       SENSEFLOW_STORAGE_DIR, SENSEFLOW_LOG_LEVEL)
    2. YAML settings file (config/settings.yaml)
    3. The Defaults class

Example settings.yaml:
    synthesizer:
      base_url: http://localhost:9880
      speaker: default

    aligner:
      enabled: true
      base_url: http://localhost:8000

    cache:
      max_entries: 500
      cleanup_threshold: 400
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict
import os
import yaml


class ConfigValidationError(Exception):
    """Raised when a configuration value is out of bounds or malformed."""
    pass


class Defaults:
    """
    Default configuration values.

    Used whenever neither the settings file nor the environment provides
    an override.
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Persistent cache (audio / text namespaces)
    # ─────────────────────────────────────────────────────────────────────────
    CACHE_MAX_ENTRIES = 500             # Eviction trigger per namespace
    CACHE_CLEANUP_THRESHOLD = 400       # Entries kept after eviction
    CACHE_HOT_MAX_ITEMS = 50            # Decoded buffers kept in memory

    # ─────────────────────────────────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────────────────────────────────
    STORAGE_BASE_DIR = "./storage"
    STORAGE_MAX_MATERIALS = 500

    # ─────────────────────────────────────────────────────────────────────────
    # Speech synthesizer
    # ─────────────────────────────────────────────────────────────────────────
    SYNTH_BASE_URL = "http://localhost:9880"
    SYNTH_MODE = "sft"
    SYNTH_SPEAKER = ""                  # Empty: first advertised speaker
    SYNTH_SPEED = 1.0
    SYNTH_LANGUAGE = "en"
    SYNTH_TIMEOUT_S = 120.0

    # ─────────────────────────────────────────────────────────────────────────
    # Forced aligner
    # ─────────────────────────────────────────────────────────────────────────
    ALIGNER_ENABLED = True
    ALIGNER_BASE_URL = "http://localhost:8000"
    ALIGNER_MODEL = "large-v2"
    ALIGNER_LANGUAGE = "en"
    ALIGNER_MAX_ATTEMPTS = 3
    ALIGNER_BACKOFF_S = 1.0             # Multiplied by the attempt number
    ALIGNER_TIMEOUT_S = 300.0

    # ─────────────────────────────────────────────────────────────────────────
    # Playback
    # ─────────────────────────────────────────────────────────────────────────
    PLAYBACK_GAP_SECONDS = 2.0
    PLAYBACK_GAP_SOUND = "beep"         # beep | none
    PLAYBACK_RATE = 1.0
    PLAYBACK_NOISE_TYPE = "white"       # white | gaussian | custom
    PLAYBACK_NOISE_VOLUME = 0.0
    PLAYBACK_SAMPLE_RATE = 22050

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 60
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


NOISE_TYPES = ("white", "gaussian", "custom")
GAP_SOUNDS = ("beep", "none")


@dataclass
class CacheConfig:
    """Persistent cache bounds plus the in-memory hot cache size."""
    max_entries: int = Defaults.CACHE_MAX_ENTRIES
    cleanup_threshold: int = Defaults.CACHE_CLEANUP_THRESHOLD
    hot_max_items: int = Defaults.CACHE_HOT_MAX_ITEMS


@dataclass
class StorageConfig:
    base_dir: str = Defaults.STORAGE_BASE_DIR
    max_materials: int = Defaults.STORAGE_MAX_MATERIALS


@dataclass
class SynthesizerConfig:
    base_url: str = Defaults.SYNTH_BASE_URL
    mode: str = Defaults.SYNTH_MODE
    speaker: str = Defaults.SYNTH_SPEAKER
    speed: float = Defaults.SYNTH_SPEED
    language: str = Defaults.SYNTH_LANGUAGE
    timeout_s: float = Defaults.SYNTH_TIMEOUT_S


@dataclass
class AlignerConfig:
    """
    Forced aligner settings.

    When disabled, synthesizer-provided word timings (if any) are used
    as the word stream.
    """
    enabled: bool = Defaults.ALIGNER_ENABLED
    base_url: str = Defaults.ALIGNER_BASE_URL
    model: str = Defaults.ALIGNER_MODEL
    language: str = Defaults.ALIGNER_LANGUAGE
    max_attempts: int = Defaults.ALIGNER_MAX_ATTEMPTS
    backoff_s: float = Defaults.ALIGNER_BACKOFF_S
    timeout_s: float = Defaults.ALIGNER_TIMEOUT_S


@dataclass
class PlaybackConfig:
    gap_seconds: float = Defaults.PLAYBACK_GAP_SECONDS
    gap_sound: str = Defaults.PLAYBACK_GAP_SOUND
    playback_rate: float = Defaults.PLAYBACK_RATE
    noise_type: str = Defaults.PLAYBACK_NOISE_TYPE
    noise_volume: float = Defaults.PLAYBACK_NOISE_VOLUME
    sample_rate: int = Defaults.PLAYBACK_SAMPLE_RATE


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL, 2 = NORMAL (default), 3 = VERBOSE, 4 = DEBUG
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class ServiceConfig:
    """
    Validated configuration for the whole pipeline.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = ServiceConfig.from_settings(settings)
        print(config.cache.max_entries)
    """
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    synthesizer: SynthesizerConfig = field(default_factory=SynthesizerConfig)
    aligner: AlignerConfig = field(default_factory=AlignerConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ServiceConfig":
        """
        Build a ServiceConfig from raw settings, applying defaults.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Cache
        # ─────────────────────────────────────────────────────────────────────
        cache_raw = raw.get("cache", {}) or {}
        cache = CacheConfig(
            max_entries=int(cache_raw.get("max_entries", Defaults.CACHE_MAX_ENTRIES)),
            cleanup_threshold=int(cache_raw.get("cleanup_threshold", Defaults.CACHE_CLEANUP_THRESHOLD)),
            hot_max_items=int(cache_raw.get("hot_max_items", Defaults.CACHE_HOT_MAX_ITEMS)),
        )
        cls._validate_positive("cache.max_entries", cache.max_entries)
        cls._validate_non_negative("cache.cleanup_threshold", cache.cleanup_threshold)
        cls._validate_positive("cache.hot_max_items", cache.hot_max_items)
        if cache.cleanup_threshold > cache.max_entries:
            raise ConfigValidationError(
                f"cache.cleanup_threshold ({cache.cleanup_threshold}) must not exceed "
                f"cache.max_entries ({cache.max_entries})"
            )

        # ─────────────────────────────────────────────────────────────────────
        # Storage
        # ─────────────────────────────────────────────────────────────────────
        storage_raw = raw.get("storage", {}) or {}
        storage = StorageConfig(
            base_dir=str(storage_raw.get("base_dir", Defaults.STORAGE_BASE_DIR)),
            max_materials=int(storage_raw.get("max_materials", Defaults.STORAGE_MAX_MATERIALS)),
        )
        cls._validate_positive("storage.max_materials", storage.max_materials)

        # ─────────────────────────────────────────────────────────────────────
        # Synthesizer
        # ─────────────────────────────────────────────────────────────────────
        synth_raw = raw.get("synthesizer", {}) or {}
        synthesizer = SynthesizerConfig(
            base_url=str(synth_raw.get("base_url", Defaults.SYNTH_BASE_URL)).rstrip("/"),
            mode=str(synth_raw.get("mode", Defaults.SYNTH_MODE)),
            speaker=str(synth_raw.get("speaker", Defaults.SYNTH_SPEAKER) or ""),
            speed=float(synth_raw.get("speed", Defaults.SYNTH_SPEED)),
            language=str(synth_raw.get("language", Defaults.SYNTH_LANGUAGE)),
            timeout_s=float(synth_raw.get("timeout_s", Defaults.SYNTH_TIMEOUT_S)),
        )
        cls._validate_range("synthesizer.speed", synthesizer.speed, 0.5, 2.0)
        cls._validate_positive("synthesizer.timeout_s", synthesizer.timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Aligner
        # ─────────────────────────────────────────────────────────────────────
        aligner_raw = raw.get("aligner", {}) or {}
        aligner = AlignerConfig(
            enabled=bool(aligner_raw.get("enabled", Defaults.ALIGNER_ENABLED)),
            base_url=str(aligner_raw.get("base_url", Defaults.ALIGNER_BASE_URL)).rstrip("/"),
            model=str(aligner_raw.get("model", Defaults.ALIGNER_MODEL)),
            language=str(aligner_raw.get("language", Defaults.ALIGNER_LANGUAGE)),
            max_attempts=int(aligner_raw.get("max_attempts", Defaults.ALIGNER_MAX_ATTEMPTS)),
            backoff_s=float(aligner_raw.get("backoff_s", Defaults.ALIGNER_BACKOFF_S)),
            timeout_s=float(aligner_raw.get("timeout_s", Defaults.ALIGNER_TIMEOUT_S)),
        )
        cls._validate_positive("aligner.max_attempts", aligner.max_attempts)
        cls._validate_non_negative("aligner.backoff_s", aligner.backoff_s)
        cls._validate_positive("aligner.timeout_s", aligner.timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Playback
        # ─────────────────────────────────────────────────────────────────────
        playback_raw = raw.get("playback", {}) or {}
        playback = PlaybackConfig(
            gap_seconds=float(playback_raw.get("gap_seconds", Defaults.PLAYBACK_GAP_SECONDS)),
            gap_sound=str(playback_raw.get("gap_sound", Defaults.PLAYBACK_GAP_SOUND)),
            playback_rate=float(playback_raw.get("playback_rate", Defaults.PLAYBACK_RATE)),
            noise_type=str(playback_raw.get("noise_type", Defaults.PLAYBACK_NOISE_TYPE)),
            noise_volume=float(playback_raw.get("noise_volume", Defaults.PLAYBACK_NOISE_VOLUME)),
            sample_rate=int(playback_raw.get("sample_rate", Defaults.PLAYBACK_SAMPLE_RATE)),
        )
        cls._validate_non_negative("playback.gap_seconds", playback.gap_seconds)
        cls._validate_choice("playback.gap_sound", playback.gap_sound, GAP_SOUNDS)
        cls._validate_positive("playback.playback_rate", playback.playback_rate)
        cls._validate_choice("playback.noise_type", playback.noise_type, NOISE_TYPES)
        cls._validate_range("playback.noise_volume", playback.noise_volume, 0.0, 1.0)
        cls._validate_positive("playback.sample_rate", playback.sample_rate)

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)

        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            cache=cache,
            storage=storage,
            synthesizer=synthesizer,
            aligner=aligner,
            playback=playback,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")

    @staticmethod
    def _validate_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
        if value not in choices:
            raise ConfigValidationError(f"{name} must be one of {', '.join(choices)}, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """
    Raw settings as loaded from YAML, before validation.

    Call get_service_config() for the validated, typed view.
    """
    raw: Dict[str, Any]

    @property
    def storage_dir(self) -> str:
        return str((self.raw.get("storage", {}) or {}).get("base_dir", Defaults.STORAGE_BASE_DIR))

    @property
    def synthesizer_url(self) -> str:
        return str((self.raw.get("synthesizer", {}) or {}).get("base_url", Defaults.SYNTH_BASE_URL))

    @property
    def aligner_url(self) -> str:
        return str((self.raw.get("aligner", {}) or {}).get("base_url", Defaults.ALIGNER_BASE_URL))

    def get_service_config(self) -> ServiceConfig:
        return ServiceConfig.from_settings(self)


_ENV_OVERRIDES = (
    ("SENSEFLOW_SYNTH_URL", "synthesizer", "base_url"),
    ("SENSEFLOW_ALIGNER_URL", "aligner", "base_url"),
    ("SENSEFLOW_STORAGE_DIR", "storage", "base_dir"),
)


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML file and apply environment overrides.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    for env_name, section, key in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value:
            raw.setdefault(section, {})[key] = value

    return Settings(raw=raw)
