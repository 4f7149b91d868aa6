"""
Configuration management for crashguard.
Loads and validates configuration settings.
"""

import os
import json
import signal
import tempfile
from pathlib import Path
from typing import List, Dict, Any, Tuple, Optional


# Environment variable carrying the config path into worker processes
CONFIG_ENV_VAR = 'CRASHGUARD_CONFIG'


class Config:
    """Manages application configuration."""

    # Default configuration values
    DEFAULT_CONFIG = {
        # Data directory layout heuristics
        'version_marker': 'VERSION',
        'storage_subdir': 'base',
        'min_storage_entries': 3,
        'quarantine_suffix': '.corrupt',

        # Directory lock
        'lock_suffix': '.lock',
        'lock_mode': 'pid',

        # Harness timing (milliseconds)
        'open_timeout_ms': 15000,
        'safety_timeout_ms': 30000,
        'kill_signal': 'SIGKILL',
        'init_step_delay_ms': 0,
        'busy_timeout_ms': 5000,

        # Scenario runs
        'work_root': '',
        'retain_data': False,
        'max_scenario_seconds': 1800,

        # Logging
        'max_log_files': 5,
        'log_folder': 'logs',
        'event_log': ''
    }

    LOCK_MODES = ('pid', 'flock')

    def __init__(self, config_path: Path = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, uses defaults.
        """
        self.config = self.DEFAULT_CONFIG.copy()
        self.source_path: Optional[Path] = None

        if config_path and Path(config_path).exists():
            self.load_config(Path(config_path))

    @classmethod
    def from_env(cls) -> 'Config':
        """Build config from the path in CRASHGUARD_CONFIG (defaults when unset)."""
        path = os.environ.get(CONFIG_ENV_VAR)
        return cls(Path(path) if path else None)

    def load_config(self, config_path: Path):
        """Load configuration from JSON file."""
        try:
            with open(config_path, 'r') as f:
                user_config = json.load(f)

                # Validate loaded config before applying
                is_valid, errors = self._validate_config(user_config)
                if not is_valid:
                    print(f"\nConfiguration validation failed:")
                    print(f"  Config file: {config_path.absolute()}")
                    print()
                    for error in errors:
                        print(error)
                        print()
                    print("Using default configuration instead.")
                    return

                self.config.update(user_config)
                self.source_path = config_path.absolute()
        except json.JSONDecodeError as e:
            print(f"\nERROR: Invalid JSON in config file")
            print(f"  Config file: {config_path.absolute()}")
            print(f"  Problem: {e}")
            print(f"  Line: {e.lineno}, Column: {e.colno}")
            print()
            print("Fix the JSON syntax and try again.")
            print("Using default configuration.")
        except OSError as e:
            print(f"\nERROR: Could not load config file")
            print(f"  Config file: {config_path.absolute()}")
            print(f"  Problem: {e}")
            print()
            print("Using default configuration.")

    def save_config(self, config_path: Path):
        """Save current configuration to JSON file."""
        try:
            with open(config_path, 'w') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            print(f"Error saving config to {config_path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value."""
        self.config[key] = value

    def _validate_config(self, config: Dict[str, Any]) -> Tuple[bool, List[str]]:
        """
        Validate configuration dictionary.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        # Validate numeric ranges
        numeric_fields = {
            'min_storage_entries': (1, 100, "Minimum storage entries", 3),
            'open_timeout_ms': (100, 600000, "Open timeout", 15000),
            'safety_timeout_ms': (1000, 3600000, "Safety timeout", 30000),
            'init_step_delay_ms': (0, 60000, "Init step delay", 0),
            'busy_timeout_ms': (0, 600000, "Busy timeout", 5000),
            'max_scenario_seconds': (10, 86400, "Scenario time limit", 1800),
            'max_log_files': (1, 100, "Maximum log files", 5),
        }

        for field, (min_val, max_val, display_name, example) in numeric_fields.items():
            if field in config:
                value = config[field]
                if not isinstance(value, int) or isinstance(value, bool):
                    errors.append(
                        f"ERROR: Invalid config value\n"
                        f"  Field: {field}\n"
                        f"  Value: {repr(value)} ({type(value).__name__})\n"
                        f"  Expected: number (integer)\n"
                        f"  Example: {example}\n"
                        f"  Valid range: {min_val} to {max_val}"
                    )
                elif value < min_val or value > max_val:
                    errors.append(
                        f"ERROR: Invalid config value\n"
                        f"  Field: {field}\n"
                        f"  Value: {value}\n"
                        f"  Expected: number between {min_val} and {max_val}\n"
                        f"  Example: {example}"
                    )

        # Validate path-component fields (plain names, no separators)
        name_fields = {
            'version_marker': 'VERSION',
            'storage_subdir': 'base',
        }

        for field, example in name_fields.items():
            if field in config:
                value = config[field]
                if not isinstance(value, str) or not value:
                    errors.append(
                        f"ERROR: Invalid config value\n"
                        f"  Field: {field}\n"
                        f"  Value: {repr(value)}\n"
                        f"  Expected: non-empty file name\n"
                        f"  Example: \"{example}\""
                    )
                elif os.sep in value or value in ('.', '..'):
                    errors.append(
                        f"ERROR: Invalid config value\n"
                        f"  Field: {field}\n"
                        f"  Problem: Must be a single name inside the data directory\n"
                        f"  Example: \"{example}\""
                    )

        # Suffixes are appended to the data directory path
        for field, example in (('lock_suffix', '.lock'), ('quarantine_suffix', '.corrupt')):
            if field in config:
                value = config[field]
                if not isinstance(value, str) or not value.startswith('.') or os.sep in value:
                    errors.append(
                        f"ERROR: Invalid config value\n"
                        f"  Field: {field}\n"
                        f"  Value: {repr(value)}\n"
                        f"  Problem: Suffix must start with '.' and contain no path separator\n"
                        f"  Example: \"{example}\""
                    )

        if 'lock_mode' in config and config['lock_mode'] not in self.LOCK_MODES:
            errors.append(
                f"ERROR: Invalid config value\n"
                f"  Field: lock_mode\n"
                f"  Value: {repr(config['lock_mode'])}\n"
                f"  Expected: one of {', '.join(self.LOCK_MODES)}"
            )

        if 'kill_signal' in config:
            value = config['kill_signal']
            if not isinstance(value, str) or value not in signal.Signals.__members__:
                errors.append(
                    f"ERROR: Invalid config value\n"
                    f"  Field: kill_signal\n"
                    f"  Value: {repr(value)}\n"
                    f"  Expected: signal name available on this platform\n"
                    f"  Example: \"SIGKILL\""
                )

        if 'retain_data' in config and not isinstance(config['retain_data'], bool):
            errors.append(f"retain_data must be true or false, got {type(config['retain_data']).__name__}")

        # Validate string fields
        for field in ('log_folder', 'work_root', 'event_log'):
            if field in config and not isinstance(config[field], str):
                errors.append(f"{field} must be a string, got {type(config[field]).__name__}")

        return (len(errors) == 0, errors)

    @property
    def version_marker(self) -> str:
        """Get name of the file whose presence marks a completed init."""
        return self.config['version_marker']

    @property
    def storage_subdir(self) -> str:
        """Get name of the storage subdirectory counted by the init check."""
        return self.config['storage_subdir']

    @property
    def min_storage_entries(self) -> int:
        """Get minimum storage subdirectory entries of a fully initialized directory."""
        return self.config['min_storage_entries']

    @property
    def quarantine_suffix(self) -> str:
        return self.config['quarantine_suffix']

    @property
    def lock_suffix(self) -> str:
        return self.config['lock_suffix']

    @property
    def lock_mode(self) -> str:
        """Get lock mode ('pid' or 'flock')."""
        return self.config['lock_mode']

    @property
    def open_timeout_ms(self) -> int:
        """Get verification open timeout in milliseconds."""
        return self.config['open_timeout_ms']

    @property
    def safety_timeout_ms(self) -> int:
        """Get universal worker safety timeout in milliseconds."""
        return self.config['safety_timeout_ms']

    @property
    def kill_signal(self) -> signal.Signals:
        """Get default kill signal."""
        return signal.Signals[self.config['kill_signal']]

    @property
    def init_step_delay_ms(self) -> int:
        """Get delay between first-time initialization stages."""
        return self.config['init_step_delay_ms']

    @property
    def busy_timeout_ms(self) -> int:
        return self.config['busy_timeout_ms']

    @property
    def work_root(self) -> Path:
        """Get root for scenario data directories (system temp dir when unset)."""
        root = self.config.get('work_root')
        return Path(root) if root else Path(tempfile.gettempdir())

    @property
    def retain_data(self) -> bool:
        """Get whether scenario directories are kept after a run."""
        return self.config['retain_data']

    @property
    def max_scenario_seconds(self) -> int:
        """Get wall-clock limit for the worker runs of one scenario."""
        return self.config['max_scenario_seconds']

    @property
    def max_log_files(self) -> int:
        """Get maximum number of log files to keep."""
        return self.config['max_log_files']

    @property
    def log_folder(self) -> str:
        """Get log folder path."""
        return self.config['log_folder']

    @property
    def event_log(self) -> Optional[Path]:
        """Get structured event log path, if event logging to file is enabled."""
        path = self.config.get('event_log')
        return Path(path) if path else None
