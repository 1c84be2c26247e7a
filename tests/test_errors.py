from rpcfilters.errors import (
    RET_CLIENT_VALIDATE_FAIL,
    RET_OK,
    RET_SERVER_VALIDATE_FAIL,
    RET_UNKNOWN,
    ErrorType,
    RpcError,
    error_code,
)


def test_error_code_of_none_is_ok():
    assert error_code(None) == RET_OK


def test_error_code_of_rpc_error_is_its_code():
    assert error_code(RpcError(RET_SERVER_VALIDATE_FAIL, "bad")) == RET_SERVER_VALIDATE_FAIL
    assert error_code(RpcError(-1, "bad")) == -1


def test_error_code_of_foreign_error_is_unknown():
    assert error_code(ValueError("err fake")) == RET_UNKNOWN


def test_rpc_error_defaults_to_business():
    err = RpcError(RET_CLIENT_VALIDATE_FAIL, "err")
    assert err.error_type is ErrorType.BUSINESS
    assert err.msg == "err"


def test_rpc_error_str_names_type_code_and_message():
    err = RpcError(7, "boom", ErrorType.FRAMEWORK)
    assert str(err) == "type:framework, code:7, msg:boom"


def test_callee_framework_description():
    err = RpcError(7, "boom", ErrorType.CALLEE_FRAMEWORK)
    assert "callee framework" in str(err)


def test_rpc_error_is_raisable():
    try:
        raise RpcError(3, "x")
    except RpcError as exc:
        assert error_code(exc) == 3