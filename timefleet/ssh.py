"""SSH utilities for reaching the enforcement agent on managed hosts."""
from __future__ import annotations

import logging
import shlex
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Callable, Generator, Optional, Sequence

import paramiko

logger = logging.getLogger("timefleet.ssh")


class SSHError(RuntimeError):
    """Raised when an SSH operation fails."""


class AgentUnreachableError(SSHError):
    """The host could not be reached, or a call timed out before completing."""


class HostKeyVerificationError(AgentUnreachableError):
    """Raised when host key verification fails for a remote host."""

    def __init__(self, hostname: str, *, port: int | None = None, suggestion: str | None = None) -> None:
        base = f"Host key verification failed for {hostname}"
        if port is not None:
            base += f":{port}"
        base += "."
        if suggestion:
            base = f"{base} {suggestion}".strip()
        super().__init__(base)
        self.hostname = hostname
        self.port = port
        self.suggestion = suggestion


class AgentCommandError(SSHError):
    """The session is up but the remote command failed or returned unusable output."""

    def __init__(self, message: str, result: "CommandResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class CommandResult:
    """Result of an executed SSH command."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class AgentCredential:
    """Opaque key material used to authenticate as the remote account.

    ``private_key`` is either PEM text or a path to a key file.
    """

    private_key: str
    passphrase: Optional[str] = None

    @classmethod
    def from_path(cls, path: Path, passphrase: Optional[str] = None) -> "AgentCredential":
        return cls(private_key=str(path), passphrase=passphrase)


@dataclass
class SSHTarget:
    """Connection parameters for a remote host."""

    hostname: str
    port: int
    username: str
    private_key: str
    passphrase: Optional[str] = None
    allow_unknown_hosts: bool = False
    known_hosts_path: Optional[Path] = None
    timeout: float = 10.0


def _load_private_key(private_key: str, passphrase: str | None) -> paramiko.PKey:
    key_classes = (
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
        paramiko.RSAKey,
    )
    cleaned = private_key.strip()

    if "-----BEGIN" in cleaned:
        last_error: Exception | None = None
        for key_cls in key_classes:
            stream = StringIO(cleaned)
            try:
                return key_cls.from_private_key(stream, password=passphrase)
            except paramiko.PasswordRequiredException as exc:
                raise SSHError("The private key is encrypted and requires a passphrase") from exc
            except paramiko.SSHException as exc:
                last_error = exc
        raise SSHError("Unable to load private key - unsupported format or invalid passphrase") from last_error

    path = Path(cleaned).expanduser()
    for key_cls in key_classes:
        try:
            return key_cls.from_private_key_file(str(path), password=passphrase)
        except FileNotFoundError as exc:
            raise SSHError(f"Private key file not found: {path}") from exc
        except paramiko.PasswordRequiredException as exc:
            raise SSHError("The private key is encrypted and requires a passphrase") from exc
        except paramiko.SSHException:
            continue
    raise SSHError("Unable to load private key - unsupported format or invalid passphrase")


class SSHClientFactory:
    """Factory that builds connected SSH clients for a target."""

    def __init__(self, target: SSHTarget) -> None:
        self._target = target

    @contextmanager
    def connect(self) -> Generator[paramiko.SSHClient, None, None]:
        client = paramiko.SSHClient()
        try:
            self._open(client)
            yield client
        finally:
            client.close()

    def _open(self, client: paramiko.SSHClient) -> None:
        target = self._target
        try:
            if target.known_hosts_path:
                client.load_host_keys(str(target.known_hosts_path))
            else:
                client.load_system_host_keys()
        except OSError as exc:
            raise AgentUnreachableError(f"Unable to read known hosts: {exc}") from exc

        if target.allow_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        try:
            pkey = _load_private_key(target.private_key, target.passphrase)
        except SSHError as exc:
            raise AgentUnreachableError(str(exc)) from exc

        try:
            client.connect(
                hostname=target.hostname,
                port=target.port,
                username=target.username,
                pkey=pkey,
                timeout=target.timeout,
                banner_timeout=target.timeout,
                auth_timeout=target.timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as exc:
            raise AgentUnreachableError("Authentication with the remote host failed") from exc
        except paramiko.BadHostKeyException as exc:
            suggestion = (
                "The host key differs from the entry stored in the known hosts file. "
                "Update the stored key or enable allow_unknown_hosts for this fleet."
            )
            raise HostKeyVerificationError(
                exc.hostname,
                port=target.port,
                suggestion=suggestion,
            ) from exc
        except paramiko.SSHException as exc:
            message = str(exc)
            if "not found in known_hosts" in message:
                host = target.hostname
                suggestion = (
                    "Add the host to the configured known hosts file or enable "
                    "allow_unknown_hosts for this fleet."
                )
                raise HostKeyVerificationError(host, port=target.port, suggestion=suggestion) from exc
            raise AgentUnreachableError(f"SSH connection failed: {message}") from exc
        except socket.timeout as exc:
            raise AgentUnreachableError(
                f"Timed out connecting to {target.hostname}:{target.port} after {target.timeout} seconds"
            ) from exc
        except (OSError, EOFError) as exc:
            raise AgentUnreachableError(f"Unable to connect to {target.hostname}:{target.port}: {exc}") from exc


class AgentSession:
    """An open, authenticated session on one host; never shared between workers."""

    def __init__(
        self,
        host: str,
        client: paramiko.SSHClient,
        *,
        command_timeout: float,
        sudo: bool = False,
    ) -> None:
        self.host = host
        self._client = client
        self._command_timeout = command_timeout
        self._sudo = sudo

    def execute(self, command: str, args: Sequence[str]) -> CommandResult:
        """Run ``command`` with ``args`` and return its output.

        A non-zero exit status raises :class:`AgentCommandError`; a call that
        exceeds the per-call timeout or loses the transport raises
        :class:`AgentUnreachableError`.
        """

        argv = [command, *[str(arg) for arg in args]]
        if self._sudo:
            argv = ["sudo", "-n", *argv]
        rendered = " ".join(shlex.quote(part) for part in argv)

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise AgentUnreachableError(f"SSH transport to {self.host} is no longer active")

        logger.debug("Running '%s' on %s", rendered, self.host)
        try:
            _stdin, stdout, stderr = self._client.exec_command(rendered, timeout=self._command_timeout)
        except paramiko.SSHException as exc:
            raise AgentCommandError(f"Failed to execute remote command '{rendered}': {exc}") from exc

        try:
            stdout_text = stdout.read().decode("utf-8", errors="replace")
            stderr_text = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            raise AgentUnreachableError(
                f"Remote command '{rendered}' timed out after {self._command_timeout} seconds"
            ) from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise AgentUnreachableError(f"Lost connection to {self.host} while running '{rendered}': {exc}") from exc

        result = CommandResult(command=tuple(argv), exit_status=exit_status, stdout=stdout_text, stderr=stderr_text)
        if exit_status != 0:
            detail = stderr_text.strip() or stdout_text.strip() or f"exit status {exit_status}"
            raise AgentCommandError(f"Remote command '{rendered}' failed: {detail}", result)
        return result


ClientFactoryBuilder = Callable[[SSHTarget], SSHClientFactory]


class RemoteAgentAdapter:
    """Opens sessions to managed hosts as the fixed remote account.

    The adapter performs no retries; callers decide what to do with
    :class:`AgentUnreachableError` and :class:`AgentCommandError`.
    """

    def __init__(
        self,
        *,
        username: str,
        port: int = 22,
        allow_unknown_hosts: bool = False,
        known_hosts_path: Optional[Path] = None,
        command_timeout: float = 30.0,
        sudo: bool = False,
        client_factory: ClientFactoryBuilder = SSHClientFactory,
    ) -> None:
        self._username = username
        self._port = port
        self._allow_unknown_hosts = allow_unknown_hosts
        self._known_hosts_path = known_hosts_path
        self._command_timeout = command_timeout
        self._sudo = sudo
        self._client_factory = client_factory

    @contextmanager
    def connect(
        self,
        host: str,
        credential: AgentCredential,
        timeout: float,
    ) -> Generator[AgentSession, None, None]:
        target = SSHTarget(
            hostname=host,
            port=self._port,
            username=self._username,
            private_key=credential.private_key,
            passphrase=credential.passphrase,
            allow_unknown_hosts=self._allow_unknown_hosts,
            known_hosts_path=self._known_hosts_path,
            timeout=timeout,
        )
        with self._client_factory(target).connect() as client:
            yield AgentSession(host, client, command_timeout=self._command_timeout, sudo=self._sudo)


__all__ = [
    "SSHError",
    "AgentUnreachableError",
    "HostKeyVerificationError",
    "AgentCommandError",
    "CommandResult",
    "AgentCredential",
    "SSHTarget",
    "SSHClientFactory",
    "AgentSession",
    "RemoteAgentAdapter",
]
