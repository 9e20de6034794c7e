from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, List
from datetime import datetime
from enum import Enum
import re

_REPO_URL_RE = re.compile(r"^https?://(www\.)?github\.com/[\w-]+/[\w.-]+")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Role(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"


class DeploymentStatus(str, Enum):
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    STOPPED = "stopped"


class BillingStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class LogSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RoleState(BaseModel):
    repo: str
    description: Optional[str] = None
    process_name: Optional[str] = None
    domain: Optional[str] = None
    allocated_port: Optional[int] = None
    actual_port: Optional[int] = None
    port_confirmed: bool = False
    url: Optional[str] = None
    https: bool = False
    proxy_configured: bool = False
    status: str = "pending"  # pending, deployed, failed
    error: Optional[str] = None


class DeploymentCreate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    frontend_repo: Optional[str] = None
    backend_repo: Optional[str] = None
    frontend_description: Optional[str] = Field(default=None, max_length=500)
    backend_description: Optional[str] = Field(default=None, max_length=500)
    env_vars: Dict[str, str] = Field(default_factory=dict)

    @field_validator("frontend_repo", "backend_repo")
    @classmethod
    def validate_repo_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            return None
        if not _REPO_URL_RE.match(value):
            raise ValueError("Invalid GitHub repository URL")
        return value

    @field_validator("env_vars")
    @classmethod
    def validate_env_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key in value:
            if not _ENV_KEY_RE.match(key):
                raise ValueError(f"Invalid environment variable name: {key}")
        return value

    @model_validator(mode="after")
    def require_a_repo(self):
        if not self.frontend_repo and not self.backend_repo:
            raise ValueError("At least one repository (frontend or backend) is required")
        return self

    def requested_roles(self) -> List[Role]:
        roles = []
        if self.frontend_repo:
            roles.append(Role.FRONTEND)
        if self.backend_repo:
            roles.append(Role.BACKEND)
        return roles

    def repo_for(self, role: Role) -> Optional[str]:
        return self.frontend_repo if role == Role.FRONTEND else self.backend_repo

    def description_for(self, role: Role) -> Optional[str]:
        return self.frontend_description if role == Role.FRONTEND else self.backend_description


class DeploymentResponse(BaseModel):
    id: str
    user_id: str
    name: str
    subdomain: str
    status: DeploymentStatus
    billing_status: BillingStatus = BillingStatus.ACTIVE
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    delete_scheduled_at: Optional[datetime] = None
    env_vars: Dict[str, str] = Field(default_factory=dict)
    frontend: Optional[RoleState] = None
    backend: Optional[RoleState] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def role(self, role: Role) -> Optional[RoleState]:
        return self.frontend if role == Role.FRONTEND else self.backend

    def roles(self) -> List[Role]:
        return [r for r in (Role.FRONTEND, Role.BACKEND) if self.role(r) is not None]

    @property
    def suspended(self) -> bool:
        return self.billing_status == BillingStatus.SUSPENDED


class DeploymentLogEntry(BaseModel):
    deployment_id: str
    sequence: int
    severity: LogSeverity
    message: str
    created_at: datetime


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    status: DeploymentStatus
    logs: List[DeploymentLogEntry]
    has_more: bool = False


class RoleResult(BaseModel):
    role: Role
    success: bool
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class StepResult(BaseModel):
    target: str  # a role name or a cleanup step such as "logs" or "record"
    success: bool
    error: Optional[str] = None


class OperationResult(BaseModel):
    deployment_id: str
    success: bool
    results: List[StepResult] = Field(default_factory=list)


class DeployOutcome(BaseModel):
    success: bool
    deployment: DeploymentResponse
    roles: List[RoleResult] = Field(default_factory=list)


class RoleRuntimeStatus(BaseModel):
    process_name: Optional[str] = None
    running: bool = False
    status: str = "not_found"
    pid: Optional[int] = None
    uptime: Optional[int] = None
    restarts: int = 0
    memory: int = 0
    cpu: float = 0.0
    port: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None


class DeploymentStatusResponse(BaseModel):
    deployment: DeploymentResponse
    roles: Dict[str, RoleRuntimeStatus] = Field(default_factory=dict)


class ProcessLogsResponse(BaseModel):
    deployment_id: str
    role: Role
    logs: str
