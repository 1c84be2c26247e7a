"""RPC errors carrying a return code and an error type."""

from __future__ import annotations

import enum

RET_OK = 0
RET_SERVER_VALIDATE_FAIL = 51
RET_CLIENT_VALIDATE_FAIL = 151
RET_UNKNOWN = 999


class ErrorType(enum.IntEnum):
    FRAMEWORK = 1
    BUSINESS = 2
    CALLEE_FRAMEWORK = 3

    @property
    def description(self) -> str:
        if self is ErrorType.FRAMEWORK:
            return "framework"
        if self is ErrorType.CALLEE_FRAMEWORK:
            return "callee framework"
        return "business"


class RpcError(Exception):
    """An error with a numeric return code; business errors by default."""

    def __init__(self, code: int, msg: str, error_type: ErrorType = ErrorType.BUSINESS) -> None:
        super().__init__(code, msg)
        self.code = code
        self.msg = msg
        self.error_type = error_type

    def __str__(self) -> str:
        return f"type:{self.error_type.description}, code:{self.code}, msg:{self.msg}"


def error_code(err: BaseException | None) -> int:
    """Return the return code of ``err``: OK for none, unknown for foreign errors."""
    if err is None:
        return RET_OK
    if isinstance(err, RpcError):
        return err.code
    return RET_UNKNOWN