from supabase import Client
from app.modules.deployments.schemas import DeploymentLogEntry, LogSeverity
from app.modules.deployments import log_stream
from typing import Dict, List, Optional
from datetime import datetime, timezone
import threading
import logging

logger = logging.getLogger(__name__)

# Sequence counters are shared by every service instance in this process
_sequence_lock = threading.Lock()
_sequences: Dict[str, int] = {}


class DeploymentLogService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _stored_max_sequence(self, deployment_id: str) -> int:
        result = self.supabase.table("deployment_logs")\
            .select("sequence")\
            .eq("deployment_id", deployment_id)\
            .order("sequence", desc=True)\
            .limit(1)\
            .execute()
        if result.data:
            return int(result.data[0]["sequence"])
        return 0

    def _next_sequence(self, deployment_id: str) -> int:
        with _sequence_lock:
            if deployment_id not in _sequences:
                _sequences[deployment_id] = self._stored_max_sequence(deployment_id)
            _sequences[deployment_id] += 1
            return _sequences[deployment_id]

    def append(
        self,
        deployment_id: str,
        message: str,
        severity: LogSeverity = LogSeverity.INFO,
    ) -> DeploymentLogEntry:
        """Persist one log line and fan it out to live subscribers."""
        entry = DeploymentLogEntry(
            deployment_id=deployment_id,
            sequence=self._next_sequence(deployment_id),
            severity=severity,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.supabase.table("deployment_logs").insert(entry.model_dump(mode="json")).execute()
        except Exception as e:
            # The stream still gets the line; storage failures must not abort a deploy
            logger.error(f"Error persisting log for deployment {deployment_id}: {str(e)}")
        log_stream.publish(deployment_id, entry.model_dump(mode="json"))
        return entry

    def list_logs(
        self,
        deployment_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> List[DeploymentLogEntry]:
        query = self.supabase.table("deployment_logs")\
            .select("*")\
            .eq("deployment_id", deployment_id)\
            .gt("sequence", after_sequence)\
            .order("sequence")
        if limit:
            query = query.limit(limit)
        result = query.execute()
        return [DeploymentLogEntry(**row) for row in result.data or []]

    def delete_by_deployment(self, deployment_id: str) -> bool:
        try:
            self.supabase.table("deployment_logs")\
                .delete()\
                .eq("deployment_id", deployment_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error deleting logs for deployment {deployment_id}: {str(e)}")
            return False
        with _sequence_lock:
            _sequences.pop(deployment_id, None)
        return True


class DeploymentLogger:
    """Per-deployment emitter used by the orchestrator. Mirrors every line to the Python logger."""

    _LEVELS = {
        LogSeverity.INFO: logging.INFO,
        LogSeverity.SUCCESS: logging.INFO,
        LogSeverity.WARNING: logging.WARNING,
        LogSeverity.ERROR: logging.ERROR,
    }

    def __init__(self, log_service: DeploymentLogService, deployment_id: str):
        self.log_service = log_service
        self.deployment_id = deployment_id

    def emit(self, message: str, severity: LogSeverity = LogSeverity.INFO) -> DeploymentLogEntry:
        logger.log(self._LEVELS[severity], f"[{self.deployment_id}] {message}")
        return self.log_service.append(self.deployment_id, message, severity)

    def info(self, message: str):
        return self.emit(message, LogSeverity.INFO)

    def success(self, message: str):
        return self.emit(message, LogSeverity.SUCCESS)

    def warning(self, message: str):
        return self.emit(message, LogSeverity.WARNING)

    def error(self, message: str):
        return self.emit(message, LogSeverity.ERROR)

    def close(self):
        log_stream.close(self.deployment_id)
