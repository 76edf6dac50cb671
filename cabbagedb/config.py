"""Server configuration loaded from a YAML file over built-in defaults."""

from __future__ import annotations

from dataclasses import dataclass, field

import yaml


@dataclass
class Config:
    """Node configuration; every field has a default."""

    id: int = 1
    peers: dict[int, str] = field(default_factory=dict)
    listen_sql: str = "0.0.0.0:9605"
    listen_raft: str = "0.0.0.0:9705"
    log_level: str = "INFO"
    data_dir: str = "data"
    compact_threshold: float = 0.2
    storage_raft: str = "bitcask"
    storage_sql: str = "bitcask"


def _as_int(value) -> int:
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value, 0)
    raise TypeError(f"cannot decode {value!r} as an integer")


def _as_node_id(value) -> int:
    node_id = _as_int(value)
    if not 0 <= node_id <= 255:
        raise ValueError(f"node id {node_id} out of range")
    return node_id


def _as_str(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeError(f"cannot decode {value!r} as a string")


def _as_float(value) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise TypeError(f"cannot decode {value!r} as a number")


def _as_peers(value) -> dict[int, str]:
    if not isinstance(value, dict):
        raise TypeError(f"cannot decode {value!r} as a peer map")
    return {_as_node_id(k): _as_str(v) for k, v in value.items()}


_DECODERS = {
    "id": _as_node_id,
    "peers": _as_peers,
    "listen_sql": _as_str,
    "listen_raft": _as_str,
    "log_level": _as_str,
    "data_dir": _as_str,
    "compact_threshold": _as_float,
    "storage_raft": _as_str,
    "storage_sql": _as_str,
}


def _decode(raw: dict) -> Config:
    config = Config()
    for key, value in raw.items():
        name = str(key).lower()
        decoder = _DECODERS.get(name)
        if decoder is None or value is None:
            continue
        setattr(config, name, decoder(value))
    return config


def load_config(path) -> Config:
    """Read a configuration file; problems are reported and defaults used."""
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError("configuration must be a mapping")
    except (OSError, yaml.YAMLError, ValueError) as exc:
        print("Read Config error:", exc)
        raw = {}
    try:
        return _decode(raw)
    except (TypeError, ValueError) as exc:
        print(exc)
        return Config()