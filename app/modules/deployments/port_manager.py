"""Port allocation and post-launch port detection on the managed host.

Allocation is best effort: scanning and binding are not atomic, so two
deploys can race for the same port. The post-launch detection and verify
steps are what catch that, not the allocator.
"""
import logging
import re
import shlex
import threading
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from app.config import settings
from app.modules.deployments.errors import PortExhausted
from app.modules.deployments.pm2_supervisor import PM2Supervisor, ProcessInfo
from app.modules.deployments.ssh_channel import SSHChannel

logger = logging.getLogger(__name__)

# Most specific first. The first pattern with a usable match wins, regardless
# of where in the output its match appears.
PORT_LOG_PATTERNS = [
    re.compile(r"Local:\s+https?://[^\s:/]+:(\d+)", re.IGNORECASE),  # Vite: Local: http://localhost:5173
    re.compile(r"listening on.*?https?://.*?:(\d+)", re.IGNORECASE),
    re.compile(r"server running (?:at|on).*?:(\d+)", re.IGNORECASE),
    re.compile(r"listening on (?:port )?:(\d+)", re.IGNORECASE),
    re.compile(r"server (?:started|listening) on port (\d+)", re.IGNORECASE),
    re.compile(r"running on port (\d+)", re.IGNORECASE),
    re.compile(r"started (?:at|on) port (\d+)", re.IGNORECASE),
    re.compile(r"listening at .*?:(\d+)", re.IGNORECASE),
    re.compile(r"PORT[=:\s]+(\d+)", re.IGNORECASE),
    re.compile(r"App listening on (\d+)", re.IGNORECASE),
]

_LSOF_LISTEN_RE = re.compile(r":(\d+)\s+\(LISTEN\)")


class PortDetection(BaseModel):
    port: int
    allocated_port: int
    confirmed: bool
    method: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.port != self.allocated_port


class DetectionContext:
    """What a port detector gets to look at. The process record is fetched once per pass."""

    def __init__(
        self,
        channel: SSHChannel,
        supervisor: PM2Supervisor,
        process_name: str,
        allocated_port: int,
        port_min: int,
        port_max: int,
        log_lines: int = 100,
    ):
        self.channel = channel
        self.supervisor = supervisor
        self.process_name = process_name
        self.allocated_port = allocated_port
        self.port_min = port_min
        self.port_max = port_max
        self.log_lines = log_lines
        self._process: Optional[ProcessInfo] = None
        self._process_loaded = False

    @property
    def process(self) -> Optional[ProcessInfo]:
        if not self._process_loaded:
            self._process = self.supervisor.get(self.process_name)
            self._process_loaded = True
        return self._process

    def plausible(self, port: Optional[int]) -> bool:
        return port is not None and self.port_min <= port <= self.port_max


def _local_port(address: str) -> Optional[int]:
    """Port from an ss/lsof local address such as 0.0.0.0:3000, [::]:3000 or *:3000."""
    if ":" not in address:
        return None
    tail = address.rsplit(":", 1)[1]
    return int(tail) if tail.isdigit() else None


def detect_pid_lsof(ctx: DetectionContext) -> Optional[int]:
    process = ctx.process
    if not process or not process.pid:
        return None
    result = ctx.channel.execute(f"lsof -Pan -p {int(process.pid)} -i")
    if not result.success:
        return None
    ports = sorted({int(p) for p in _LSOF_LISTEN_RE.findall(result.stdout)})
    ports = [p for p in ports if ctx.plausible(p)]
    return ports[0] if ports else None


def detect_pid_ss(ctx: DetectionContext) -> Optional[int]:
    process = ctx.process
    if not process or not process.pid:
        return None
    result = ctx.channel.execute("ss -ltnpH")
    if not result.success:
        return None
    marker = f"pid={int(process.pid)},"
    ports = set()
    for line in result.stdout.splitlines():
        if marker not in line:
            continue
        fields = line.split()
        if len(fields) < 4:
            continue
        port = _local_port(fields[3])
        if ctx.plausible(port):
            ports.add(port)
    return min(ports) if ports else None


def find_port_in_output(output: str, port_min: int, port_max: int) -> Optional[int]:
    """Highest-priority pattern wins; within it, the most recent match is used."""
    if not output:
        return None
    for pattern in PORT_LOG_PATTERNS:
        candidates = [int(m) for m in pattern.findall(output)]
        candidates = [p for p in candidates if port_min <= p <= port_max]
        if candidates:
            return candidates[-1]
    return None


def detect_process_output(ctx: DetectionContext) -> Optional[int]:
    output = ctx.supervisor.tail_logs(ctx.process_name, ctx.log_lines)
    return find_port_in_output(output, ctx.port_min, ctx.port_max)


def detect_supervisor_env(ctx: DetectionContext) -> Optional[int]:
    process = ctx.process
    if not process or not process.env_port:
        return None
    value = process.env_port.strip()
    if not value.isdigit():
        return None
    port = int(value)
    return port if ctx.plausible(port) else None


Detector = Callable[[DetectionContext], Optional[int]]

DEFAULT_DETECTORS: List[Tuple[str, Detector]] = [
    ("lsof", detect_pid_lsof),
    ("ss", detect_pid_ss),
    ("process_output", detect_process_output),
    ("supervisor_env", detect_supervisor_env),
]


class PortManager:
    def __init__(
        self,
        channel: SSHChannel,
        supervisor: PM2Supervisor,
        min_port: Optional[int] = None,
        max_port: Optional[int] = None,
        detectors: Optional[List[Tuple[str, Detector]]] = None,
    ):
        self.channel = channel
        self.supervisor = supervisor
        self.min_port = min_port if min_port is not None else settings.port_range_min
        self.max_port = max_port if max_port is not None else settings.port_range_max
        self.detectors = detectors if detectors is not None else list(DEFAULT_DETECTORS)
        # Rebuildable index of ports handed out by this process; live probing is the truth
        self._leases: Set[int] = set()
        self._lock = threading.Lock()

    def listening_ports(self) -> Set[int]:
        result = self.channel.execute("ss -ltnH")
        ports = set()
        if not result.success:
            logger.warning(f"Could not list listening sockets: {result.stderr}")
            return ports
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 4:
                continue
            port = _local_port(fields[3])
            if port is not None:
                ports.add(port)
        return ports

    def is_port_in_use(self, port: int) -> bool:
        result = self.channel.execute(f"ss -ltnH {shlex.quote(f'( sport = :{int(port)} )')}")
        return bool(result.stdout.strip())

    def find_free_port(self) -> int:
        """First port in range with no listener and no lease, re-checked once before it is returned."""
        listening = self.listening_ports()
        with self._lock:
            leased = set(self._leases)
        for port in range(self.min_port, self.max_port + 1):
            if port in listening or port in leased:
                continue
            if self.is_port_in_use(port):
                logger.info(f"Port {port} became busy during re-check, continuing scan")
                continue
            with self._lock:
                if port in self._leases:
                    continue
                self._leases.add(port)
            logger.info(f"Found free port: {port}")
            return port
        raise PortExhausted(self.min_port, self.max_port)

    def release(self, port: Optional[int]):
        if port is None:
            return
        with self._lock:
            self._leases.discard(port)

    def leased_ports(self) -> Set[int]:
        with self._lock:
            return set(self._leases)

    def rebuild_leases(self, ports: Iterable[int]):
        with self._lock:
            self._leases = {p for p in ports if p is not None}

    def _run_detectors(self, process_name: str, allocated_port: int) -> Tuple[Optional[int], Optional[str]]:
        ctx = DetectionContext(
            channel=self.channel,
            supervisor=self.supervisor,
            process_name=process_name,
            allocated_port=allocated_port,
            port_min=settings.port_detect_min,
            port_max=settings.port_detect_max,
            log_lines=settings.process_log_lines,
        )
        for name, detector in self.detectors:
            try:
                port = detector(ctx)
            except Exception as e:
                logger.warning(f"Port detector {name} failed for {process_name}: {e}")
                continue
            if port:
                logger.info(f"Port detector {name} found {process_name} on port {port}")
                return port, name
            logger.debug(f"Port detector {name} found nothing for {process_name}")
        return None, None

    def detect_actual_port(self, process_name: str, allocated_port: int) -> PortDetection:
        port, method = self._run_detectors(process_name, allocated_port)
        if port is None:
            logger.info(
                f"No port detected for {process_name}, retrying in {settings.port_detect_retry_delay}s"
            )
            time.sleep(settings.port_detect_retry_delay)
            port, method = self._run_detectors(process_name, allocated_port)
        if port is None:
            logger.warning(f"Port for {process_name} not confirmed, falling back to allocated {allocated_port}")
            return PortDetection(port=allocated_port, allocated_port=allocated_port, confirmed=False)
        return PortDetection(port=port, allocated_port=allocated_port, confirmed=True, method=method)

    def verify(self, port: int) -> bool:
        attempts = max(1, settings.port_verify_attempts)
        for attempt in range(1, attempts + 1):
            if self.is_port_in_use(port):
                return True
            if attempt < attempts:
                time.sleep(settings.port_verify_backoff * attempt)
        return False
