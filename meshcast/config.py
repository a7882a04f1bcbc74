"""Configuration management for meshcast.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESHCAST_SIGNALING_WS, MESHCAST_ICE_SERVERS)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- meshcast.toml in current working directory
- ~/.meshcast/config.toml

Environment selection via MESHCAST_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://stream.example.org/ws/stream"

    [ice]
    servers = ["stun:stun.l.google.com:19302"]

    [media]
    camera_device = "/dev/video1"
    video_size = "1280x720"
"""

import os
import platform
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlencode

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger

# Default signaling relay (local development relay)
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080/ws/stream"
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302"]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

# Capture defaults per platform: (device, ffmpeg format)
_PLATFORM_CAPTURE = {
    "Linux": {
        "camera": ("/dev/video0", "v4l2"),
        "microphone": ("default", "pulse"),
        "screen": (":0.0", "x11grab"),
    },
    "Darwin": {
        "camera": ("default:none", "avfoundation"),
        "microphone": ("none:default", "avfoundation"),
        "screen": ("Capture screen 0:none", "avfoundation"),
    },
    "Windows": {
        "camera": ("video=Integrated Camera", "dshow"),
        "microphone": ("audio=Microphone", "dshow"),
        "screen": ("desktop", "gdigrab"),
    },
}


@dataclass
class MediaConfig:
    """Capture settings for aiortc MediaPlayer sources.

    Attributes:
        camera_device: Camera device name passed to ffmpeg.
        camera_format: ffmpeg input format for the camera.
        microphone_device: Microphone device name, or None to capture video only.
        microphone_format: ffmpeg input format for the microphone.
        screen_device: Screen capture device name.
        screen_format: ffmpeg input format for screen capture.
        video_size: Requested capture size, e.g. "640x480".
        framerate: Requested capture frame rate.
    """

    camera_device: str
    camera_format: str
    microphone_device: Optional[str]
    microphone_format: str
    screen_device: str
    screen_format: str
    video_size: str = "640x480"
    framerate: int = 30

    @classmethod
    def platform_default(cls, system: Optional[str] = None) -> "MediaConfig":
        """Build capture defaults for the running (or given) platform."""
        system = system or platform.system()
        capture = _PLATFORM_CAPTURE.get(system, _PLATFORM_CAPTURE["Linux"])
        return cls(
            camera_device=capture["camera"][0],
            camera_format=capture["camera"][1],
            microphone_device=capture["microphone"][0],
            microphone_format=capture["microphone"][1],
            screen_device=capture["screen"][0],
            screen_format=capture["screen"][1],
        )

    @classmethod
    def from_dict(cls, data: dict, system: Optional[str] = None) -> "MediaConfig":
        """Create MediaConfig from a TOML [media] section over platform defaults.

        Args:
            data: Dictionary from the TOML [media] section.
            system: Platform name override (defaults to the running platform).

        Returns:
            MediaConfig instance.
        """
        config = cls.platform_default(system)
        for name in (
            "camera_device",
            "camera_format",
            "microphone_device",
            "microphone_format",
            "screen_device",
            "screen_format",
            "video_size",
        ):
            if name in data:
                setattr(config, name, data[name])

        if "framerate" in data:
            try:
                config.framerate = int(data["framerate"])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid media framerate: {data['framerate']!r}")

        # An empty string disables microphone capture
        if config.microphone_device == "":
            config.microphone_device = None
        return config

    def capture_options(self) -> Dict[str, str]:
        return {"video_size": self.video_size, "framerate": str(self.framerate)}


class Config:
    """Configuration manager for meshcast."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.environment: str = "production"
        self.media: MediaConfig = MediaConfig.platform_default()
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (MESHCAST_SIGNALING_WS, MESHCAST_ICE_SERVERS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESHCAST_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESHCAST_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESHCAST_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. meshcast.toml in current working directory
        2. ~/.meshcast/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "meshcast.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".meshcast" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.config_file = config_file

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )
        elif not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )

        servers = self._config_data.get("ice", {}).get("servers")
        if isinstance(servers, list):
            self.ice_servers = [str(url) for url in servers]
        elif servers is not None:
            logger.warning(f"Ignoring [ice] servers in {config_file}: expected a list")

        self.media = MediaConfig.from_dict(self._config_data.get("media", {}))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("MESHCAST_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        ice_override = os.getenv("MESHCAST_ICE_SERVERS")
        if ice_override is not None:
            self.ice_servers = [url.strip() for url in ice_override.split(",") if url.strip()]
            logger.info(f"Overriding ice_servers from env: {self.ice_servers}")

    def get_websocket_url(self, participant_id: str, base_url: Optional[str] = None) -> str:
        """Get the signaling relay URL for a participant.

        Args:
            participant_id: Id sent to the relay as the clientId query parameter.
            base_url: Relay URL overriding the configured one.

        Returns:
            WebSocket URL including the clientId query string.
        """
        url = base_url or self.signaling_websocket
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{urlencode({'clientId': participant_id})}"

    def rtc_configuration(self) -> RTCConfiguration:
        """Build the aiortc configuration used for every peer connection."""
        return RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers]
        )

    def as_dict(self) -> dict:
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "signaling_websocket": self.signaling_websocket,
            "ice_servers": list(self.ice_servers),
            "media": {
                "camera": f"{self.media.camera_device} ({self.media.camera_format})",
                "microphone": (
                    f"{self.media.microphone_device} ({self.media.microphone_format})"
                    if self.media.microphone_device
                    else None
                ),
                "screen": f"{self.media.screen_device} ({self.media.screen_format})",
                "video_size": self.media.video_size,
                "framerate": self.media.framerate,
            },
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
