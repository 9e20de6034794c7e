"""Single administrative SSH channel to the managed host.

Every remote action (process supervision, port detection, nginx, the build tool)
goes through one SSHChannel. Commands are serialized with a lock because shell
state on the host is shared by everything using the channel.
"""
import base64
import io
import logging
import shlex
import socket
import threading
from typing import Optional

import paramiko
from pydantic import BaseModel

from app.config import settings
from app.modules.deployments.errors import ConnectivityError

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    command: str
    code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.code == 0


class SSHChannel:
    def __init__(
        self,
        host: str,
        username: str = "root",
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: int = 30,
        keepalive_interval: int = 10,
    ):
        self.host = host
        self.username = username
        self.port = port
        self.password = password
        self.private_key = private_key
        self.timeout = timeout
        self.keepalive_interval = keepalive_interval
        self.client: Optional[paramiko.SSHClient] = None
        self._lock = threading.RLock()

    def _is_active(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def _load_key(self) -> Optional[paramiko.PKey]:
        if not self.private_key:
            return None
        for key_cls in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
            try:
                return key_cls.from_private_key(io.StringIO(self.private_key))
            except paramiko.SSHException:
                continue
        raise ConnectivityError("SSH private key could not be parsed")

    def connect(self) -> bool:
        """Open the connection if it is not already open. Safe to call repeatedly."""
        with self._lock:
            if self._is_active():
                return True
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    pkey=self._load_key(),
                    timeout=self.timeout,
                    banner_timeout=self.timeout,
                    auth_timeout=self.timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except (paramiko.SSHException, socket.error, OSError) as e:
                client.close()
                self.client = None
                logger.error(f"SSH connection to {self.host} failed: {e}")
                raise ConnectivityError(f"SSH connection to {self.host} failed: {e}") from e
            transport = client.get_transport()
            if transport is not None and self.keepalive_interval:
                transport.set_keepalive(self.keepalive_interval)
            self.client = client
            logger.info(f"SSH connection established to {self.host}")
            return True

    def disconnect(self):
        with self._lock:
            if self.client is not None:
                self.client.close()
                self.client = None
                logger.info(f"SSH connection to {self.host} closed")

    def execute(self, command: str, cwd: Optional[str] = None) -> CommandResult:
        """Run a command and capture its result.

        A non-zero exit code is returned, not raised. A dropped connection is
        re-established once; ConnectivityError means the host stayed
        unreachable.
        """
        final_cmd = f"cd {shlex.quote(cwd)} && {command}" if cwd else command
        with self._lock:
            for attempt in (1, 2):
                self.connect()
                try:
                    _stdin, stdout, stderr = self.client.exec_command(final_cmd, timeout=None)
                    out = stdout.read().decode("utf-8", errors="replace")
                    err = stderr.read().decode("utf-8", errors="replace")
                    code = stdout.channel.recv_exit_status()
                    break
                except (paramiko.SSHException, EOFError, socket.error, OSError) as e:
                    logger.warning(f"[{self.host}] channel dropped while running command (attempt {attempt}): {e}")
                    self.disconnect()
                    if attempt == 2:
                        raise ConnectivityError(f"Lost connection to {self.host}: {e}") from e
        logger.debug(f"[{self.host}] exit={code} cmd={command[:200]}")
        return CommandResult(command=command, code=code, stdout=out.strip(), stderr=err.strip())

    def read_file(self, path: str) -> Optional[str]:
        result = self.execute(f"cat {shlex.quote(path)}")
        if not result.success:
            logger.warning(f"Failed to read {path}: {result.stderr}")
            return None
        return result.stdout

    def write_file(self, path: str, content: str) -> bool:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        result = self.execute(f"printf %s {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}")
        if not result.success:
            logger.error(f"Failed to write {path}: {result.stderr}")
        return result.success

    def directory_exists(self, path: str) -> bool:
        return self.execute(f"test -d {shlex.quote(path)}").success

    def remove_path(self, path: str, recursive: bool = False) -> bool:
        flag = "-rf" if recursive else "-f"
        return self.execute(f"rm {flag} {shlex.quote(path)}").success


_channel: Optional[SSHChannel] = None
_channel_lock = threading.Lock()


def get_channel() -> SSHChannel:
    global _channel
    with _channel_lock:
        if _channel is None:
            _channel = SSHChannel(
                host=settings.ssh_host,
                username=settings.ssh_user,
                port=settings.ssh_port,
                password=settings.ssh_password,
                private_key=settings.ssh_private_key,
                timeout=settings.ssh_connect_timeout,
                keepalive_interval=settings.ssh_keepalive_interval,
            )
        return _channel
