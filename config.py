"""Client configuration: defaults, environment variables and a JSON file.

Precedence is explicit argument > environment > config file > defaults.
The config file lives at ``~/.config/ollama-stream/config.json``::

    {"base_url": "http://gpu-box:11434", "default_model": "llama3.2", "keep_alive": 600}
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from logger import get_logger

log = get_logger("config")

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_KEEP_ALIVE = 300
CONFIG_PATH = Path.home() / ".config" / "ollama-stream" / "config.json"


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    model: str | None = None
    keep_alive: int = DEFAULT_KEEP_ALIVE
    timeout: float | None = None


def normalize_base_url(url: str) -> str:
    """Add a scheme to bare ``host:port`` values and drop trailing slashes."""
    url = url.strip()
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def read_config_file(path: Path | None = None) -> dict:
    path = path or CONFIG_PATH
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return data


def save_config(cfg: dict, path: Path | None = None) -> None:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2), encoding="utf-8")


def _as_int(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be an integer number of seconds (got {value!r})") from e


def _as_float(name: str, value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{name} must be a number of seconds (got {value!r})") from e


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ClientConfig:
    """Build a :class:`ClientConfig` from the environment and the config file.

    Recognised variables: ``OLLAMA_URL`` (or ``OLLAMA_HOST``), ``OLLAMA_MODEL``
    and ``OLLAMA_KEEP_ALIVE``.
    """
    env = os.environ if env is None else env
    file_cfg = read_config_file(path)

    base_url = (
        env.get("OLLAMA_URL")
        or env.get("OLLAMA_HOST")
        or file_cfg.get("base_url")
        or DEFAULT_BASE_URL
    )
    model = env.get("OLLAMA_MODEL") or file_cfg.get("default_model")

    if env.get("OLLAMA_KEEP_ALIVE"):
        keep_alive = _as_int("OLLAMA_KEEP_ALIVE", env["OLLAMA_KEEP_ALIVE"])
    elif "keep_alive" in file_cfg:
        keep_alive = _as_int("keep_alive", file_cfg["keep_alive"])
    else:
        keep_alive = DEFAULT_KEEP_ALIVE

    timeout = file_cfg.get("timeout")
    if timeout is not None:
        timeout = _as_float("timeout", timeout)

    return ClientConfig(
        base_url=normalize_base_url(base_url),
        model=model,
        keep_alive=keep_alive,
        timeout=timeout,
    )
