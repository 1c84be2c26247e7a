"""Filters that validate requests on the server and responses on the client."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from rpcfilters.context import Message
from rpcfilters.errors import RET_CLIENT_VALIDATE_FAIL, RET_SERVER_VALIDATE_FAIL, RpcError

PLUGIN_NAME = "validation"
PLUGIN_TYPE = "auth"

logger = logging.getLogger(__name__)


@dataclass
class ValidationOptions:
    log_file: list[bool] = field(default_factory=list)
    enable_error_log: bool = False
    server_validate_err_code: int = RET_SERVER_VALIDATE_FAIL
    client_validate_err_code: int = RET_CLIENT_VALIDATE_FAIL


Option = Callable[[ValidationOptions], None]
ServerHandler = Callable[[Message, Any], Any]
ClientHandler = Callable[[Message, Any, Any], Any]


@runtime_checkable
class Validator(Protocol):
    """Objects that check themselves; ``validate`` raises when invalid."""

    def validate(self) -> None: ...


def with_logfile(allow: bool) -> Option:
    """Set whether to log validation errors (older name of ``with_error_log``)."""
    return with_error_log(allow)


def with_error_log(allow: bool) -> Option:
    def apply(opts: ValidationOptions) -> None:
        opts.enable_error_log = allow

    return apply


def with_server_validate_err_code(code: int) -> Option:
    def apply(opts: ValidationOptions) -> None:
        opts.server_validate_err_code = code

    return apply


def with_client_validate_err_code(code: int) -> Option:
    def apply(opts: ValidationOptions) -> None:
        opts.client_validate_err_code = code

    return apply


def _build(opts: tuple[Option, ...]) -> ValidationOptions:
    options = ValidationOptions()
    for opt in opts:
        opt(options)
    return options


def server_filter(*args: Option):
    """Build a server filter from option functions."""
    return server_filter_with_options(_build(args))


def client_filter(*args: Option):
    """Build a client filter from option functions."""
    return client_filter_with_options(_build(args))


def _header_value(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    return next((v for k, v in headers.items() if k.lower() == wanted), "")


def server_filter_with_options(options: ValidationOptions):
    """Return a filter validating requests before the handler runs."""
    opts = copy.deepcopy(options)

    def _filter(msg: Message, req: Any, handler: ServerHandler) -> Any:
        if isinstance(req, Validator):
            try:
                req.validate()
            except Exception as exc:
                err_msg = str(exc)
                if opts.enable_error_log:
                    extra: dict[str, Any] = {"request_content": req}
                    head = msg.http_header
                    if head is not None:
                        extra.update(
                            request_path=head.path,
                            request_query=head.raw_query,
                            request_useragent=_header_value(head.headers, "User-Agent"),
                            request_referer=_header_value(head.headers, "Referer"),
                        )
                    logger.error("validation request error: %s", err_msg, extra=extra)
                raise RpcError(opts.server_validate_err_code, err_msg) from exc
        return handler(msg, req)

    return _filter


def client_filter_with_options(options: ValidationOptions):
    """Return a filter validating responses after the handler succeeds."""
    opts = copy.deepcopy(options)

    def _filter(msg: Message, req: Any, rsp: Any, handler: ClientHandler) -> None:
        handler(msg, req, rsp)
        if not isinstance(rsp, Validator):
            return
        try:
            rsp.validate()
        except Exception as exc:
            if opts.enable_error_log:
                logger.error("validation response error: %s", exc, extra={"response_content": rsp})
            raise RpcError(opts.client_validate_err_code, str(exc)) from exc

    return _filter


def _decode_options(config: Any, options: ValidationOptions) -> ValidationOptions:
    if not isinstance(config, Mapping):
        raise ValueError("validation config must be a mapping")
    if "logfile" in config and config["logfile"] is not None:
        log_file = config["logfile"]
        if not isinstance(log_file, list) or not all(isinstance(v, bool) for v in log_file):
            raise ValueError("logfile must be a list of booleans")
        options.log_file = list(log_file)
    if "enable_error_log" in config:
        value = config["enable_error_log"]
        if not isinstance(value, bool):
            raise ValueError("enable_error_log must be a boolean")
        options.enable_error_log = value
    for key in ("server_validate_err_code", "client_validate_err_code"):
        if key in config:
            value = config[key]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{key} must be an integer")
            setattr(options, key, value)
    return options


class ValidationPlugin:
    """Loads validation options and builds the filters from them."""

    def __init__(self) -> None:
        self.options = ValidationOptions()
        self.server_filter = server_filter_with_options(self.options)
        self.client_filter = client_filter_with_options(self.options)

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, config: Mapping[str, Any] | None) -> None:
        """Apply ``config`` over the defaults; raises ValueError if it is malformed."""
        options = ValidationOptions()
        if config is not None:
            options = _decode_options(config, options)
        if not options.enable_error_log and options.log_file and options.log_file[0]:
            options.enable_error_log = True
        self.options = options
        self.server_filter = server_filter_with_options(options)
        self.client_filter = client_filter_with_options(options)