import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

APP_NAME = "agentrt"


def get_config_dir() -> Path:
    return Path(user_config_dir(APP_NAME))


def get_data_dir() -> Path:
    # used in testing, so must take precedence
    if "AGENTRT_DATA_HOME" in os.environ:
        return Path(os.environ["AGENTRT_DATA_HOME"])
    return Path(user_data_dir(APP_NAME))


def get_metadata_dir() -> Path:
    """Directory holding the per-agent side-metadata (port, log dir)."""
    return get_data_dir() / "agents"


def get_locks_dir() -> Path:
    """PID locks of agents running in-process."""
    return get_data_dir() / "locks"


def get_pm2_home() -> Path:
    """Private PM2_HOME, so our pm2 daemon never touches the user's own pm2 instance."""
    if "AGENTRT_PM2_HOME" in os.environ:
        return Path(os.environ["AGENTRT_PM2_HOME"])
    return get_data_dir() / "pm2"


def get_launch_agents_dir() -> Path:
    return Path.home() / "Library" / "LaunchAgents"


def get_launchd_logs_dir() -> Path:
    return Path.home() / "Library" / "Logs" / APP_NAME


def get_systemd_user_dir() -> Path:
    if "XDG_CONFIG_HOME" in os.environ:
        return Path(os.environ["XDG_CONFIG_HOME"]) / "systemd" / "user"
    return Path.home() / ".config" / "systemd" / "user"
