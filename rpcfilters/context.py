"""Per-call RPC message data shared by client and server filters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping


@dataclass
class HttpHeader:
    """The HTTP request behind an RPC call, when it arrived over HTTP."""

    path: str = ""
    raw_query: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class Message:
    """The message of one RPC call as seen by filters."""

    client_rpc_name: str = ""
    server_rpc_name: str = ""
    client_metadata: dict[str, bytes] = field(default_factory=dict)
    http_header: HttpHeader | None = None

    def with_client_metadata(self, metadata: Mapping[str, bytes]) -> None:
        """Replace the metadata passed on to the downstream service."""
        self.client_metadata = dict(metadata)