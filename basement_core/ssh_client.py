"""SSH client wrapper for running single commands on customer instances."""

import asyncio
import io
import logging
import socket
from dataclasses import dataclass
from typing import Optional

import paramiko

logger = logging.getLogger(__name__)

SSH_PORT = 22


@dataclass
class SSHResult:
    stdout: str
    stderr: str
    exit_code: int


class RemoteExecutionError(Exception):
    """Base exception for remote command failures."""

    def __init__(self, host: str, message: str):
        self.host = host
        self.message = message
        super().__init__(f"[{host}] {message}")


class SSHConnectionError(RemoteExecutionError):
    """Could not open or keep a session (auth, timeout, unreachable).

    The command's outcome is unknown; never read this as a negative answer.
    """
    pass


class SSHCommandError(RemoteExecutionError):
    """The command ran and exited nonzero."""

    def __init__(self, host: str, command: str, result: SSHResult):
        self.command = command
        self.result = result
        super().__init__(host, f"Command exited {result.exit_code}: {result.stderr.strip()[:200]}")


def _load_private_key(secret: str) -> Optional[paramiko.PKey]:
    """Parse a PEM/OpenSSH private key, or None if the secret is a password."""
    if not secret.lstrip().startswith("-----BEGIN"):
        return None
    for key_class in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(secret))
        except paramiko.SSHException:
            continue
    raise ValueError("Unsupported private key format")


class RemoteCommandExecutor:
    """
    Opens an authenticated SSH session to a host and runs one command.

    Usage:
        executor = RemoteCommandExecutor(connect_timeout=15)
        result = await executor.run("203.0.113.5", "root", password, "uptime")
    """

    def __init__(
        self,
        connect_timeout: float = 15.0,
        command_timeout: float = 30.0,
        port: int = SSH_PORT,
    ):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.port = port

    def _run_blocking(self, host: str, username: str, secret: str, command: str) -> SSHResult:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            try:
                pkey = _load_private_key(secret)
                client.connect(
                    hostname=host,
                    port=self.port,
                    username=username,
                    password=None if pkey else secret,
                    pkey=pkey,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except paramiko.AuthenticationException as e:
                raise SSHConnectionError(host, f"Authentication failed: {e}")
            except (paramiko.SSHException, socket.timeout, OSError, ValueError) as e:
                raise SSHConnectionError(host, f"Connection failed: {e}")

            try:
                _, stdout, stderr = client.exec_command(command, timeout=self.command_timeout)
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                exit_code = stdout.channel.recv_exit_status()
            except socket.timeout:
                raise SSHConnectionError(host, f"Command timed out after {self.command_timeout}s")
            except (paramiko.SSHException, OSError) as e:
                raise SSHConnectionError(host, f"Session failed: {e}")

            return SSHResult(stdout=out, stderr=err, exit_code=exit_code)
        finally:
            client.close()

    async def run(
        self,
        host: str,
        username: str,
        secret: str,
        command: str,
        check: bool = True,
    ) -> SSHResult:
        """
        Run a command on a remote host.

        Args:
            host: Hostname or IP
            username: Login user
            secret: Password, or a PEM private key
            command: Shell command to execute
            check: Raise SSHCommandError on nonzero exit

        Raises:
            SSHConnectionError: session could not be established or was lost
            SSHCommandError: command exited nonzero (when check=True)
        """
        overall_timeout = self.connect_timeout + self.command_timeout + 5
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._run_blocking, host, username, secret, command),
                timeout=overall_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("SSH command timed out after %ds: %s@%s", overall_timeout, username, host)
            raise SSHConnectionError(host, f"Timed out after {overall_timeout}s")

        if check and result.exit_code != 0:
            raise SSHCommandError(host, command, result)
        return result
