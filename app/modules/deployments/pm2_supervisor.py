import json
import logging
import shlex
from typing import List, Optional

from pydantic import BaseModel

from app.modules.deployments.ssh_channel import SSHChannel

logger = logging.getLogger(__name__)

# Never rm -rf these, whatever pm2 reports as a working directory
_PROTECTED_DIRS = {"", "/", "/root", "/home", "/etc", "/usr", "/var", "/opt", "/tmp"}


class ProcessInfo(BaseModel):
    name: str
    status: str = "unknown"  # online, stopped, errored, launching, ...
    pid: Optional[int] = None
    memory: int = 0
    cpu: float = 0.0
    uptime: Optional[int] = None  # pm_uptime, epoch millis
    restarts: int = 0
    cwd: Optional[str] = None
    env_port: Optional[str] = None

    @property
    def online(self) -> bool:
        return self.status == "online"


def _parse_process(raw: dict) -> ProcessInfo:
    pm2_env = raw.get("pm2_env") or {}
    monit = raw.get("monit") or {}
    env = pm2_env.get("env") or {}
    env_port = env.get("PORT") or pm2_env.get("PORT")
    pid = raw.get("pid")
    return ProcessInfo(
        name=raw.get("name", ""),
        status=pm2_env.get("status", "unknown"),
        pid=pid if pid else None,
        memory=monit.get("memory") or 0,
        cpu=monit.get("cpu") or 0.0,
        uptime=pm2_env.get("pm_uptime"),
        restarts=pm2_env.get("restart_time") or 0,
        cwd=pm2_env.get("pm_cwd"),
        env_port=str(env_port) if env_port is not None else None,
    )


class PM2Supervisor:
    """Named long-running processes on the managed host, driven through pm2."""

    def __init__(self, channel: SSHChannel):
        self.channel = channel

    def list(self) -> List[ProcessInfo]:
        result = self.channel.execute("pm2 jlist")
        if not result.success:
            logger.error(f"pm2 jlist failed: {result.stderr}")
            return []
        try:
            raw = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            logger.error("pm2 jlist returned unparsable output")
            return []
        return [_parse_process(p) for p in raw if isinstance(p, dict)]

    def get(self, name: str) -> Optional[ProcessInfo]:
        for process in self.list():
            if process.name == name:
                return process
        return None

    def stop(self, name: str) -> bool:
        result = self.channel.execute(f"pm2 stop {shlex.quote(name)}")
        if not result.success:
            logger.error(f"pm2 stop {name} failed: {result.stderr}")
        return result.success

    def restart(self, name: str) -> bool:
        result = self.channel.execute(f"pm2 restart {shlex.quote(name)}")
        if not result.success:
            logger.error(f"pm2 restart {name} failed: {result.stderr}")
        return result.success

    def delete(self, name: str) -> bool:
        """Delete the process and then its working directory.

        Returns True only when both the process and its directory are gone.
        A directory that cannot be removed is logged as a partial failure.
        """
        process = self.get(name)
        if process is None:
            logger.info(f"Process {name} is not registered with pm2, nothing to delete")
            return True
        working_dir = (process.cwd or "").strip()

        result = self.channel.execute(f"pm2 delete {shlex.quote(name)}")
        if not result.success:
            logger.error(f"pm2 delete {name} failed: {result.stderr}")
            return False
        self.channel.execute("pm2 save --force")

        if not working_dir or working_dir == "null":
            logger.info(f"No working directory recorded for {name}")
            return True
        if working_dir.rstrip("/") in _PROTECTED_DIRS:
            logger.error(f"Partial delete of {name}: refusing to remove protected directory {working_dir}")
            return False
        if not self.channel.remove_path(working_dir, recursive=True):
            logger.error(f"Partial delete of {name}: process removed but directory {working_dir} was not")
            return False
        logger.info(f"Deleted process {name} and directory {working_dir}")
        return True

    def tail_logs(self, name: str, lines: int = 100) -> str:
        result = self.channel.execute(f"pm2 logs {shlex.quote(name)} --lines {int(lines)} --nostream --raw")
        if not result.success:
            logger.warning(f"pm2 logs {name} failed: {result.stderr}")
        return result.stdout
