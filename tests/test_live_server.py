"""Checks against a real sshd.

Skipped unless SSH_CLIENT_TEST_HOST, SSH_CLIENT_TEST_USER and
SSH_CLIENT_TEST_PASSWORD are set. SSH_CLIENT_TEST_PORT defaults to 22.
"""
import io
import os
import uuid

import pytest

from linux_ssh_client.credentials import PasswordCredential
from linux_ssh_client.session import SshSession
from linux_ssh_client.types import CommandExecutionOptions, SshConnectionStatus, TerminalType

HOST = os.environ.get("SSH_CLIENT_TEST_HOST")
USER = os.environ.get("SSH_CLIENT_TEST_USER")
PASSWORD = os.environ.get("SSH_CLIENT_TEST_PASSWORD")
PORT = int(os.environ.get("SSH_CLIENT_TEST_PORT", "22"))

pytestmark = pytest.mark.skipif(
    not (HOST and USER and PASSWORD),
    reason="live SSH server not configured",
)


@pytest.fixture
def live_session():
    session = SshSession()
    session.connect(HOST, PORT, timeout=10)
    assert session.authenticate(PasswordCredential(username=USER, password=PASSWORD))
    yield session
    session.close()


def test_wrong_password_keeps_session_connected() -> None:
    with SshSession() as session:
        session.connect(HOST, PORT, timeout=10)
        assert not session.authenticate(PasswordCredential(username=USER, password=PASSWORD + "-wrong"))
        assert session.status is SshConnectionStatus.CONNECTED


def test_exec_captures_output_and_exit_code(live_session) -> None:
    result = live_session.execute_command("echo out; echo err >&2; exit 3")
    assert result.successful
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 3


def test_pty_reports_terminal(live_session) -> None:
    options = CommandExecutionOptions(request_pty=True, terminal_type=TerminalType.XTERM, width=132)
    result = live_session.execute_command("echo $TERM; tput cols", options)
    assert result.stdout.split() == ["xterm", "132"]


def test_streaming(live_session) -> None:
    with live_session.execute_command_streaming("printf 'a\\nb\\n'") as stream:
        assert stream.stdout.read() == b"a\nb\n"
        result = stream.wait_for_exit()
    assert result.exit_code == 0


@pytest.mark.parametrize("size", [0, 1, 4096, 1024 * 1024 + 7])
def test_scp_round_trip(live_session, size: int) -> None:
    payload = os.urandom(size)
    path = f"/tmp/linux-ssh-client-{uuid.uuid4().hex}"
    try:
        assert live_session.write_file(path, io.BytesIO(payload), mode=0o600)
        received = io.BytesIO()
        assert live_session.read_file(path, received)
        assert received.getvalue() == payload
    finally:
        live_session.execute_command(f"rm -f {path}")
