"""Blocks metadata keys from being passed on to downstream services."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from rpcfilters.context import Message

PLUGIN_NAME = "transinfo-blocker"
PLUGIN_TYPE = "security"


class ListMode(enum.Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    NONE = "none"


@dataclass
class ListConfig:
    """A mode and its keys; ``key_set`` is derived from ``keys``."""

    mode: ListMode
    keys: list[str] = field(default_factory=list)
    key_set: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        self.key_set = frozenset(self.keys)


@dataclass
class BlockerConfig:
    """``default`` applies to every call; ``rpc_name_cfg`` overrides it per RPC name."""

    default: ListConfig | None = None
    rpc_name_cfg: dict[str, ListConfig | None] = field(default_factory=dict)


_config = BlockerConfig()


def current_config() -> BlockerConfig:
    return _config


def reset_config() -> None:
    global _config
    _config = BlockerConfig()


def _parse_list(raw: Any) -> ListConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValueError(f"list config must be a mapping, got {type(raw).__name__}")
    mode = raw.get("mode", "")
    try:
        list_mode = ListMode(mode)
    except ValueError:
        raise ValueError(f"unknown mod: {mode}") from None
    keys = raw.get("keys")
    if keys is None:
        keys = []
    if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
        raise ValueError("keys must be a list of strings")
    return ListConfig(list_mode, list(keys))


def _parse_config(raw: Any) -> BlockerConfig:
    if not isinstance(raw, Mapping):
        raise ValueError("transinfo-blocker config must be a mapping")
    rpc_raw = raw.get("rpc_name_cfg") or {}
    if not isinstance(rpc_raw, Mapping):
        raise ValueError("rpc_name_cfg must be a mapping")
    return BlockerConfig(
        default=_parse_list(raw.get("default")),
        rpc_name_cfg={str(name): _parse_list(v) for name, v in rpc_raw.items()},
    )


class TransinfoBlocker:
    """The plugin that loads the blocker configuration."""

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, config: Mapping[str, Any] | None) -> None:
        """Replace the active configuration with ``config``; raises ValueError if invalid."""
        global _config
        if config is None:
            raise ValueError("transinfo-blocker config is missing")
        _config = BlockerConfig()
        _config = _parse_config(config)


def parse_client_metadata(msg: Message) -> None:
    """Filter the outgoing metadata of ``msg`` according to the active config."""
    if not msg.client_metadata:
        return
    call_cfg = _config.default
    if msg.client_rpc_name in _config.rpc_name_cfg:
        call_cfg = _config.rpc_name_cfg[msg.client_rpc_name]
    if call_cfg is None or call_cfg.mode is ListMode.NONE:
        return
    keep_listed = call_cfg.mode is ListMode.WHITELIST
    msg.with_client_metadata(
        {k: v for k, v in msg.client_metadata.items() if (k in call_cfg.key_set) == keep_listed}
    )


def client_filter(msg: Message, req: Any, rsp: Any, handler: Callable[[Message, Any, Any], Any]) -> Any:
    """Block metadata, then call the next handler."""
    parse_client_metadata(msg)
    return handler(msg, req, rsp)