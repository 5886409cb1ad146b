import argparse
import json
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable configuration for the CORS proxy.

    Built once at startup and handed to the server, pipeline and transport.
    """
    host: str = "0.0.0.0"
    port: int = 8080
    require_origin: bool = True
    enable_redirect: bool = False
    max_redirects: int = 3
    timeout: float = 30.0
    log_level: str = "INFO"

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @classmethod
    def load(cls, config_path: str = None, **overrides: Any) -> 'ProxyConfig':
        """
        Build a configuration from defaults, an optional JSON file and overrides.

        Args:
            config_path: Path to JSON configuration file
            overrides: Values taking precedence over the file

        Returns:
            ProxyConfig instance
        """
        config = cls._load_default_config()
        if config_path and os.path.exists(config_path):
            config.update(cls._load_config_file(config_path))
        elif config_path:
            raise ValueError(f"Error loading config file: {config_path} does not exist")

        config.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**config)

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> 'ProxyConfig':
        """Build a configuration from command-line flags."""
        args = build_parser().parse_args(argv)
        overrides = vars(args)
        config_path = overrides.pop("config")
        return cls.load(config_path, **overrides)

    @classmethod
    def _load_default_config(cls) -> Dict[str, Any]:
        """Load default configuration settings."""
        return asdict(cls())

    @classmethod
    def _load_config_file(cls, config_path: str) -> Dict[str, Any]:
        """Load configuration from JSON file."""
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ValueError(f"Error loading config file: {e}")

        if not isinstance(file_config, dict):
            raise ValueError("Error loading config file: expected a JSON object")
        known = {f.name for f in fields(cls)}
        unknown = set(file_config) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return file_config


def build_parser() -> argparse.ArgumentParser:
    # Flags left unset default to None so they don't mask the config file.
    parser = argparse.ArgumentParser(
        prog="corsanywhere",
        description="Proxy any URL and add permissive CORS headers to the response",
    )
    parser.add_argument("-c", "--config", help="JSON configuration file")
    parser.add_argument("-H", "--host", help="Bind address")
    parser.add_argument("-p", "--port", type=int,
                        help="Local port to listen for this corsanywhere service")
    parser.add_argument("--require-origin", dest="require_origin",
                        action=argparse.BooleanOptionalAction, default=None,
                        help="Require Origin header on requests")
    parser.add_argument("--enable-redirect", dest="enable_redirect",
                        action=argparse.BooleanOptionalAction, default=None,
                        help="Auto follow 307/308 redirect")
    parser.add_argument("--max-redirects", dest="max_redirects", type=int,
                        help="Maximum number of redirects to follow")
    parser.add_argument("--timeout", type=float,
                        help="Timeout (seconds) for HTTP client and transport")
    parser.add_argument("--log-level", dest="log_level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser
