from __future__ import annotations

import socket
import sys
from pathlib import Path

import paramiko
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timefleet import ssh as ssh_module
from timefleet.ssh import (
    AgentCommandError,
    AgentCredential,
    AgentSession,
    AgentUnreachableError,
    HostKeyVerificationError,
    RemoteAgentAdapter,
    SSHClientFactory,
    SSHTarget,
)


class DummyChannel:
    def __init__(self, exit_status: int = 0) -> None:
        self.exit_status = exit_status

    def recv_exit_status(self) -> int:
        return self.exit_status


class DummyStream:
    def __init__(self, data: bytes = b"", channel: DummyChannel | None = None, error: Exception | None = None) -> None:
        self._data = data
        self._error = error
        self.channel = channel or DummyChannel()

    def read(self) -> bytes:
        if self._error is not None:
            raise self._error
        return self._data


class DummyTransport:
    def __init__(self, active: bool = True) -> None:
        self.active = active

    def is_active(self) -> bool:
        return self.active


class DummyClient:
    """Stand-in for :class:`paramiko.SSHClient` that records commands."""

    connect_error: Exception | None = None
    instances: list = []

    def __init__(self) -> None:
        self.closed = False
        self.commands: list = []
        self.connect_kwargs: dict = {}
        self.stdout = b""
        self.stderr = b""
        self.exit_status = 0
        self.read_error: Exception | None = None
        self.transport = DummyTransport()
        DummyClient.instances.append(self)

    def load_host_keys(self, *_args, **_kwargs) -> None:
        pass

    def load_system_host_keys(self) -> None:
        pass

    def set_missing_host_key_policy(self, _policy) -> None:
        pass

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        if DummyClient.connect_error is not None:
            raise DummyClient.connect_error

    def get_transport(self):
        return self.transport

    def exec_command(self, command, timeout=None):
        self.commands.append((command, timeout))
        channel = DummyChannel(self.exit_status)
        return (
            None,
            DummyStream(self.stdout, channel, self.read_error),
            DummyStream(self.stderr, channel),
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def dummy_client(monkeypatch):
    DummyClient.connect_error = None
    DummyClient.instances = []
    monkeypatch.setattr(paramiko, "SSHClient", DummyClient)
    monkeypatch.setattr(ssh_module, "_load_private_key", lambda _key, _passphrase: object())
    return DummyClient


def _make_target() -> SSHTarget:
    return SSHTarget(
        hostname="10.0.0.5",
        port=22,
        username="timekpr-remote",
        private_key="dummy",
    )


def test_connect_unknown_host_error(dummy_client):
    dummy_client.connect_error = paramiko.SSHException("Server '10.0.0.5' not found in known_hosts")
    factory = SSHClientFactory(_make_target())

    with pytest.raises(HostKeyVerificationError) as excinfo:
        with factory.connect():
            pass

    assert "Add the host to the configured known hosts file" in str(excinfo.value)
    assert isinstance(excinfo.value, AgentUnreachableError)
    assert dummy_client.instances[0].closed is True


@pytest.mark.parametrize(
    "error",
    [
        paramiko.AuthenticationException("denied"),
        socket.timeout("timed out"),
        ConnectionRefusedError("refused"),
        paramiko.SSHException("Error reading SSH protocol banner"),
    ],
)
def test_connect_failures_are_unreachable(dummy_client, error):
    dummy_client.connect_error = error
    factory = SSHClientFactory(_make_target())

    with pytest.raises(AgentUnreachableError):
        with factory.connect():
            pass


def test_key_loading_failure_is_unreachable(monkeypatch):
    def _fail(_key, _passphrase):
        raise ssh_module.SSHError("Private key file not found: /missing")

    monkeypatch.setattr(ssh_module, "_load_private_key", _fail)
    factory = SSHClientFactory(_make_target())

    with pytest.raises(AgentUnreachableError) as excinfo:
        with factory.connect():
            pass
    assert "Private key file not found" in str(excinfo.value)


def test_connect_does_not_reclassify_body_errors(dummy_client):
    factory = SSHClientFactory(_make_target())

    with pytest.raises(KeyError):
        with factory.connect():
            raise KeyError("boom")

    assert dummy_client.instances[0].closed is True


def test_adapter_connects_with_key_only_auth(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote", port=2222, command_timeout=5.0)

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        assert isinstance(session, AgentSession)
        assert session.host == "10.0.0.5"

    kwargs = dummy_client.instances[0].connect_kwargs
    assert kwargs["hostname"] == "10.0.0.5"
    assert kwargs["port"] == 2222
    assert kwargs["username"] == "timekpr-remote"
    assert kwargs["timeout"] == 3.0
    assert kwargs["look_for_keys"] is False
    assert kwargs["allow_agent"] is False
    assert dummy_client.instances[0].closed is True


def test_execute_quotes_arguments_and_returns_output(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote", command_timeout=5.0)

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        client = dummy_client.instances[0]
        client.stdout = b"ALLOWED_WEEKDAYS: 1;2\n"
        result = session.execute("timekpra", ["--setalloweddays", "alice", "1;2"])

    assert client.commands == [("timekpra --setalloweddays alice '1;2'", 5.0)]
    assert result.exit_status == 0
    assert result.stdout == "ALLOWED_WEEKDAYS: 1;2\n"


def test_execute_with_sudo_prefix(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote", sudo=True)

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        session.execute("timekpra", ["--userinfo", "alice"])

    assert dummy_client.instances[0].commands[0][0] == "sudo -n timekpra --userinfo alice"


def test_execute_non_zero_exit_is_command_error(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote")

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        client = dummy_client.instances[0]
        client.exit_status = 1
        client.stderr = b"permission denied"
        with pytest.raises(AgentCommandError) as excinfo:
            session.execute("timekpra", ["--userinfo", "alice"])

    assert "permission denied" in str(excinfo.value)
    assert excinfo.value.result is not None
    assert excinfo.value.result.exit_status == 1


def test_execute_timeout_is_unreachable(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote")

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        dummy_client.instances[0].read_error = socket.timeout("timed out")
        with pytest.raises(AgentUnreachableError):
            session.execute("timekpra", ["--userinfo", "alice"])


def test_execute_on_dropped_transport_is_unreachable(dummy_client):
    adapter = RemoteAgentAdapter(username="timekpr-remote")

    with adapter.connect("10.0.0.5", AgentCredential("dummy"), 3.0) as session:
        dummy_client.instances[0].transport.active = False
        with pytest.raises(AgentUnreachableError):
            session.execute("timekpra", ["--userinfo", "alice"])
