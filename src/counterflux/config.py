"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

APP_NAME = "counterflux"

DEFAULT_TEST_COMMANDS = [
	"pytest",
	"python -m pytest",
	"npm test",
	"pnpm test",
	"yarn test",
]


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	log_dir: Path = field(init=False)

	# Workflow tuning
	max_iterations: int = 10
	loop_interval_ms: int = 200
	test_commands: list[str] = field(default_factory=lambda: list(DEFAULT_TEST_COMMANDS))

	# Agent backend
	claude_command: str = "claude"
	claude_timeout: int = 300  # seconds per instruction
	command_timeout: int = 600  # seconds per test command

	log_level: str = "INFO"

	def __post_init__(self) -> None:
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


_PATH_FIELDS = {"config_dir", "data_dir"}
_INT_FIELDS = {"max_iterations", "loop_interval_ms", "claude_timeout", "command_timeout"}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply COUNTERFLUX_* environment variable overrides."""
	env_map = {
		"COUNTERFLUX_CONFIG_DIR": "config_dir",
		"COUNTERFLUX_DATA_DIR": "data_dir",
		"COUNTERFLUX_MAX_ITERATIONS": "max_iterations",
		"COUNTERFLUX_LOOP_INTERVAL_MS": "loop_interval_ms",
		"COUNTERFLUX_TEST_COMMANDS": "test_commands",
		"COUNTERFLUX_CLAUDE_COMMAND": "claude_command",
		"COUNTERFLUX_CLAUDE_TIMEOUT": "claude_timeout",
		"COUNTERFLUX_COMMAND_TIMEOUT": "command_timeout",
		"COUNTERFLUX_LOG_LEVEL": "log_level",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if not val:
			continue
		if attr in _PATH_FIELDS:
			setattr(config, attr, Path(val))
		elif attr in _INT_FIELDS:
			setattr(config, attr, int(val))
		elif attr == "test_commands":
			# Semicolon-separated, tried in order
			config.test_commands = [c.strip() for c in val.split(";") if c.strip()]
		else:
			setattr(config, attr, val)
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if key == "log_dir" or not hasattr(config, key):
			continue
		if key in _PATH_FIELDS:
			setattr(config, key, Path(os.path.expanduser(val)))
		elif key in _INT_FIELDS:
			setattr(config, key, int(val))
		elif key == "test_commands":
			config.test_commands = [str(c) for c in val]
		else:
			setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_env_overrides(config)  # may relocate config_dir
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
