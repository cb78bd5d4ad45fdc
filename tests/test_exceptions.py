"""Error taxonomy tests.

Covers:
- exception hierarchy
- to_error_dict() output
- mapping of engine codes to kinds
- raise_if_failed / wrap_exception helpers
"""
import pytest

from linux_ssh_client.exceptions import (
    CredentialError,
    OperationCancelledError,
    SSHClientError,
    SshErrorKind,
    SshException,
    SshUsageError,
    error_from_engine,
    raise_if_failed,
    wrap_exception,
)


class _Engine:
    def __init__(self, code: int, text: str) -> None:
        self._last = (code, text)

    def last_error(self) -> tuple[int, str]:
        return self._last


class TestExceptionHierarchy:
    def test_all_exceptions_inherit_from_base(self) -> None:
        """Every package error derives from SSHClientError."""
        exceptions = [
            SshException("test", SshErrorKind.PROTO),
            SshUsageError("test"),
            OperationCancelledError(),
            CredentialError("test"),
        ]
        for exc in exceptions:
            assert isinstance(exc, SSHClientError)
            assert isinstance(exc, Exception)

    def test_usage_error_is_value_error(self) -> None:
        """Precondition violations can be caught as ValueError."""
        err = SshUsageError("bad state")
        assert isinstance(err, ValueError)
        assert isinstance(err, SshException)
        assert err.kind is SshErrorKind.USAGE_ERROR


class TestSSHClientErrorBase:
    def test_message_and_default_details(self) -> None:
        err = SSHClientError("something failed")
        assert err.message == "something failed"
        assert str(err) == "something failed"
        assert err.details == {}

    def test_to_error_dict(self) -> None:
        err = SSHClientError("boom", details={"key": "value"})
        assert err.to_error_dict() == {
            "error_type": "SSHClientError",
            "message": "boom",
            "details": {"key": "value"},
        }


class TestSshException:
    def test_kind_and_code_in_details(self) -> None:
        """Kind and code are merged into details ahead of custom fields."""
        err = SshException("timed out", SshErrorKind.TIMEOUT, details={"host": "h"})
        assert err.kind is SshErrorKind.TIMEOUT
        assert err.code == -9
        assert err.details == {"kind": "TIMEOUT", "code": -9, "host": "h"}
        assert "TIMEOUT" in str(err)

    def test_synthetic_kind_code_defaults_to_kind_value(self) -> None:
        err = SshException("init", SshErrorKind.FAILED_TO_INITIALIZE_SESSION)
        assert err.code == 2**31 - 3

    def test_credential_error_carries_host_and_user(self) -> None:
        err = CredentialError("missing", host="10.0.0.1", username="root")
        assert err.details == {"host": "10.0.0.1", "username": "root"}


class TestErrorKind:
    @pytest.mark.parametrize(
        ("code", "kind"),
        [
            (-2, SshErrorKind.BANNER_RECV),
            (-5, SshErrorKind.KEX_FAILURE),
            (-13, SshErrorKind.SOCKET_DISCONNECT),
            (-18, SshErrorKind.AUTHENTICATION_FAILED),
            (-21, SshErrorKind.CHANNEL_FAILURE),
            (-28, SshErrorKind.SCP_PROTOCOL),
            (-42, SshErrorKind.AGENT_PROTOCOL),
            (-54, SshErrorKind.HASH_CALC),
        ],
    )
    def test_from_code(self, code: int, kind: SshErrorKind) -> None:
        assert SshErrorKind.from_code(code) is kind

    def test_aliases_share_a_value(self) -> None:
        assert SshErrorKind.PUBLICKEY_UNRECOGNIZED is SshErrorKind.AUTHENTICATION_FAILED
        assert SshErrorKind.BANNER_NONE is SshErrorKind.BANNER_RECV

    def test_unmapped_code_is_unknown(self) -> None:
        assert SshErrorKind.from_code(-999) is SshErrorKind.UNKNOWN

    def test_transport_failures(self) -> None:
        assert SshErrorKind.SOCKET_DISCONNECT.is_transport_failure
        assert SshErrorKind.TIMEOUT.is_transport_failure
        assert not SshErrorKind.AUTHENTICATION_FAILED.is_transport_failure
        assert not SshErrorKind.PUBLICKEY_UNVERIFIED.is_transport_failure


class TestHelpers:
    def test_raise_if_failed_passes_through_success(self) -> None:
        assert raise_if_failed(5, None, "unused") == 5

    def test_raise_if_failed_uses_last_error(self) -> None:
        engine = _Engine(-21, "channel open refused")
        with pytest.raises(SshException) as exc_info:
            raise_if_failed(-1, engine, "Failed to open channel")
        assert exc_info.value.kind is SshErrorKind.CHANNEL_FAILURE
        assert exc_info.value.message == "Failed to open channel: channel open refused"

    def test_raise_if_failed_runs_cleanup_first(self) -> None:
        cleaned: list[bool] = []
        with pytest.raises(SshException):
            raise_if_failed(-14, _Engine(0, ""), "oops", cleanup=lambda: cleaned.append(True))
        assert cleaned == [True]

    def test_error_from_engine_falls_back_to_rc(self) -> None:
        err = error_from_engine(_Engine(0, ""), "handshake", -5)
        assert err.kind is SshErrorKind.KEX_FAILURE
        assert err.message == "handshake"

    def test_wrap_exception_preserves_cause(self) -> None:
        cause = ConnectionRefusedError("refused")
        err = wrap_exception("Failed to connect", cause)
        assert err.kind is SshErrorKind.WRAPPED_EXCEPTION
        assert err.__cause__ is cause
        assert err.details["cause"] == "ConnectionRefusedError"
