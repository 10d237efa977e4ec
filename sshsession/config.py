"""
Configuration constants for sshsession
"""
import os
from pathlib import Path
from typing import Optional

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML config or apply_profile()
# ══════════════════════════════════════════════════════════════════════════════

SSH_HOST = "localhost"
SSH_PORT = 22
SSH_USER = "root"
SSH_PASSWORD: Optional[str] = None  # None → authenticate through ssh-agent

# Timeouts (seconds)
CONNECT_TIMEOUT = 20.0
BANNER_TIMEOUT = 30.0
AUTH_TIMEOUT = 30.0
CHANNEL_TIMEOUT = 30.0
COMMAND_TIMEOUT: Optional[float] = None  # None → wait for the remote EOF forever

# Send a NOP every N seconds; 0 disables
KEEPALIVE_INTERVAL = 30

# Bytes pulled off a channel per recv()/read()
READ_CHUNK_SIZE = 32 * 1024

# Uploads go to a temp sibling and are renamed into place on success
ATOMIC_UPLOAD = True
# Remote mode for uploads; None → copy the local file's permission bits
UPLOAD_MODE: Optional[int] = None

# Retry settings (caller side only, the core never retries)
RETRY_MAX = 5
RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt

PROJECT_FILE = ".sshsession"


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/sshsession/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for sshsession."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "sshsession"
    if os.name == "nt":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "sshsession"
    return Path.home() / ".config" / "sshsession"


def load_global_config() -> dict:
    """Load the global config file; missing or empty file → {}."""
    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    return load_config_file(cfg_path)


# ══════════════════════════════════════════════════════════════════════════════
#  PROJECT CONFIG FILE  ── .sshsession (searched upward)
# ══════════════════════════════════════════════════════════════════════════════

def find_project_file(start: Optional[Path] = None) -> Optional[Path]:
    """
    Search upward from *start* (default: cwd) for a .sshsession YAML file.
    Returns the Path if found, or None if no parent has one.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / PROJECT_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config_file(path: Path) -> dict:
    """Parse a YAML config file and return its contents as a dict."""
    import yaml

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def get_profile(data: dict, profile_name: str = "default") -> dict:
    """
    Extract a named profile from a config data dict.
    Falls back to the first profile if the named one is not found.
    Returns a flat profile dict merged with top-level defaults.
    """
    defaults = data.get("defaults", {}) or {}
    profiles = data.get("profiles", []) or []
    if not profiles:
        return dict(defaults)
    profile = next((p for p in profiles if p.get("name") == profile_name), None)
    if profile is None:
        profile = profiles[0]
    merged = dict(defaults)
    merged.update(profile)
    return merged


def load_profile(profile_name: str = "default", start: Optional[Path] = None) -> dict:
    """Global config, overlaid by the nearest project file, reduced to one profile."""
    merged = get_profile(load_global_config(), profile_name)
    project = find_project_file(start)
    if project is not None:
        merged.update(get_profile(load_config_file(project), profile_name))
    return merged


# ══════════════════════════════════════════════════════════════════════════════
#  APPLY PROFILE  ── mutates module-level variables
# ══════════════════════════════════════════════════════════════════════════════

def _parse_mode(value) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 8)


def _parse_timeout(value) -> Optional[float]:
    if value is None or value == "" or value == 0:
        return None
    return float(value)


def apply_profile(profile: dict):
    """
    Apply a profile dict to the module-level config variables.
    Supports keys: server, port, user/username, password, connect_timeout,
                   command_timeout, keepalive, atomic_upload,
                   upload_mode (octal string such as '644', or int).
    """
    global SSH_HOST, SSH_PORT, SSH_USER, SSH_PASSWORD
    global CONNECT_TIMEOUT, COMMAND_TIMEOUT, KEEPALIVE_INTERVAL
    global ATOMIC_UPLOAD, UPLOAD_MODE

    if "server" in profile:
        SSH_HOST = str(profile["server"])
    if "port" in profile:
        SSH_PORT = int(profile["port"])
    if "user" in profile:
        SSH_USER = str(profile["user"])
    elif "username" in profile:
        SSH_USER = str(profile["username"])
    if "password" in profile:
        SSH_PASSWORD = str(profile["password"]) if profile["password"] else None
    if "connect_timeout" in profile:
        CONNECT_TIMEOUT = float(profile["connect_timeout"])
    if "command_timeout" in profile:
        COMMAND_TIMEOUT = _parse_timeout(profile["command_timeout"])
    if "keepalive" in profile:
        KEEPALIVE_INTERVAL = int(profile["keepalive"])
    if "atomic_upload" in profile:
        ATOMIC_UPLOAD = bool(profile["atomic_upload"])
    if "upload_mode" in profile:
        UPLOAD_MODE = _parse_mode(profile["upload_mode"])
