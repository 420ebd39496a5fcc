import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

# env var -> (section, key, type)
ENV_OVERRIDES = {
    "TXWATCH_RPC_URL": ("node", "url", str),
    "TXWATCH_RPC_TIMEOUT": ("node", "timeout", float),
    "TXWATCH_SYNC_INTERVAL": ("sync", "interval", float),
    "TXWATCH_STORE": ("store", "backend", str),
    "TXWATCH_DB_PATH": ("store", "path", str),
    "TXWATCH_PORT": ("server", "port", int),
}


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> dict:
    """Read config.toml and apply TXWATCH_* environment overrides."""
    cfg = tomllib.loads(Path(path or config_file).read_text())
    env = os.environ if env is None else env
    for var, (section, key, cast) in ENV_OVERRIDES.items():
        if var in env:
            cfg.setdefault(section, {})[key] = cast(env[var])
    return cfg


cfg = load_config()
