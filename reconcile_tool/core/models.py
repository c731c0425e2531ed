"""
Data models for the reconciliation engine using Pydantic for validation.

Resources are a closed set of tagged variants keyed on ``kind``; each kind
carries its own params/desired schema. Documents, results and reports are
frozen once built.
"""

import re
import shlex
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    """Supported resource kinds."""
    PACKAGE_STATE = "package_state"
    SERVICE_STATE = "service_state"
    FILE_ATTRIBUTES = "file_attributes"
    LINE_IN_FILE = "line_in_file"
    MOUNT_OPTION = "mount_option"
    SYSCTL_VALUE = "sysctl_value"
    COMMAND_ASSERTION = "command_assertion"


class ResultStatus(str, Enum):
    """Outcome of reconciling a single resource or firing a handler."""
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PackageTarget(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATEST = "latest"


class LineState(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


class HandlerActionType(str, Enum):
    """Deferred actions a handler may perform."""
    RESTART = "restart"
    RELOAD = "reload"
    START = "start"
    STOP = "stop"
    COMMAND = "command"


class _Spec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# Kind-specific parameter and desired-value schemas

class PackageParams(_Spec):
    name: str = Field(..., min_length=1, description="Package name")


class PackageDesired(_Spec):
    state: PackageTarget = PackageTarget.PRESENT
    version: Optional[str] = Field(None, description="Pinned version (present only)")

    @model_validator(mode="after")
    def check_version(self):
        if self.version is not None and self.state != PackageTarget.PRESENT:
            raise ValueError("a pinned version requires state 'present'")
        return self


class ServiceParams(_Spec):
    name: str = Field(..., min_length=1, description="Service unit name")


class ServiceDesired(_Spec):
    running: Optional[bool] = None
    enabled: Optional[bool] = None

    @model_validator(mode="after")
    def require_flag(self):
        if self.running is None and self.enabled is None:
            raise ValueError("at least one of 'running' or 'enabled' is required")
        return self


class FileParams(_Spec):
    path: str = Field(..., min_length=1)
    skip_if_absent: bool = False


class FileDesired(_Spec):
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: Optional[str] = Field(None, description="Octal permission string, e.g. '0644'")

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v):
        """Modes must be quoted octal strings; YAML turns bare 0644 into an int."""
        if v is None:
            return v
        if not isinstance(v, str):
            raise ValueError(f"file mode must be a quoted octal string, got {v!r}")
        if not re.fullmatch(r"[0-7]{3,4}", v):
            raise ValueError(f"file mode is not valid octal: {v!r}")
        return v.zfill(4)

    @model_validator(mode="after")
    def require_attribute(self):
        if self.owner is None and self.group is None and self.mode is None:
            raise ValueError("at least one of 'owner', 'group' or 'mode' is required")
        return self


class LineInFileParams(_Spec):
    path: str = Field(..., min_length=1)
    match: str = Field(..., min_length=1, description="Regex selecting the line to manage")
    create: bool = False
    skip_if_absent: bool = False

    @field_validator("match")
    @classmethod
    def validate_pattern(cls, v):
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid match pattern {v!r}: {e}")
        return v


class LineInFileDesired(_Spec):
    line: Optional[str] = None
    state: LineState = LineState.PRESENT

    @model_validator(mode="after")
    def require_line(self):
        if self.state == LineState.PRESENT and self.line is None:
            raise ValueError("'line' is required when state is 'present'")
        if self.line is not None and "\n" in self.line:
            raise ValueError("'line' must be a single line")
        return self


class MountParams(_Spec):
    mount_point: str = Field(..., min_length=1)


class MountDesired(_Spec):
    options: List[str] = Field(..., min_length=1)

    @field_validator("options")
    @classmethod
    def validate_options(cls, v):
        for option in v:
            if not option or "," in option or " " in option:
                raise ValueError(f"invalid mount option: {option!r}")
        return v


class SysctlParams(_Spec):
    key: str = Field(..., pattern=r"^[A-Za-z0-9_.\-/]+$")
    persist_file: Optional[str] = None


class SysctlDesired(_Spec):
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v):
        if isinstance(v, bool):
            return str(int(v))
        if isinstance(v, (int, float)):
            return str(v)
        return v


class CommandParams(_Spec):
    command: List[str] = Field(..., min_length=1)

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v):
        if isinstance(v, str):
            return shlex.split(v)
        return v


class CommandDesired(_Spec):
    exit_code: int = 0


# Resource variants

class _ResourceBase(_Spec):
    id: str = Field(..., min_length=1, description="Unique resource identifier")
    notify: List[str] = Field(default_factory=list, description="Handlers to notify on change")
    fatal: bool = Field(False, description="Halt the run if this resource fails")


class PackageResource(_ResourceBase):
    kind: Literal["package_state"] = "package_state"
    params: PackageParams
    desired: PackageDesired = Field(default_factory=PackageDesired)


class ServiceResource(_ResourceBase):
    kind: Literal["service_state"] = "service_state"
    params: ServiceParams
    desired: ServiceDesired


class FileAttributesResource(_ResourceBase):
    kind: Literal["file_attributes"] = "file_attributes"
    params: FileParams
    desired: FileDesired


class LineInFileResource(_ResourceBase):
    kind: Literal["line_in_file"] = "line_in_file"
    params: LineInFileParams
    desired: LineInFileDesired


class MountOptionResource(_ResourceBase):
    kind: Literal["mount_option"] = "mount_option"
    params: MountParams
    desired: MountDesired


class SysctlResource(_ResourceBase):
    kind: Literal["sysctl_value"] = "sysctl_value"
    params: SysctlParams
    desired: SysctlDesired


class CommandAssertionResource(_ResourceBase):
    kind: Literal["command_assertion"] = "command_assertion"
    params: CommandParams
    desired: CommandDesired = Field(default_factory=CommandDesired)


Resource = Annotated[
    Union[
        PackageResource,
        ServiceResource,
        FileAttributesResource,
        LineInFileResource,
        MountOptionResource,
        SysctlResource,
        CommandAssertionResource,
    ],
    Field(discriminator="kind"),
]


class HandlerAction(_Spec):
    """Named deferred action, fired at most once per run."""
    name: str = Field(..., min_length=1)
    action: HandlerActionType
    service: Optional[str] = None
    command: Optional[List[str]] = None

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, v):
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @model_validator(mode="after")
    def check_target(self):
        if self.action == HandlerActionType.COMMAND:
            if not self.command:
                raise ValueError("handler action 'command' requires 'command'")
        elif not self.service:
            raise ValueError(f"handler action '{self.action.value}' requires 'service'")
        return self


class PolicyDocument(_Spec):
    """Ordered resources plus the handlers they may notify."""
    name: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)
    resources: List[Resource] = Field(default_factory=list)
    handlers: Dict[str, HandlerAction] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_references(self):
        seen = set()
        for resource in self.resources:
            if resource.id in seen:
                raise ValueError(f"duplicate resource id: {resource.id}")
            seen.add(resource.id)
            for handler_name in resource.notify:
                if handler_name not in self.handlers:
                    raise ValueError(
                        f"resource {resource.id} notifies undefined handler: {handler_name}"
                    )
        for key, handler in self.handlers.items():
            if key != handler.name:
                raise ValueError(f"handler key {key!r} does not match name {handler.name!r}")
        return self


# Runtime state and results

class CurrentState(_Spec):
    """Kind-specific snapshot of a host object. found=False means absent."""
    kind: str
    found: bool = True
    attributes: Dict[str, Any] = Field(default_factory=dict)


class ErrorDetail(_Spec):
    type: str
    message: str


class ExecutionResult(_Spec):
    """Outcome of reconciling one resource."""
    resource_id: str
    kind: str
    status: ResultStatus
    message: Optional[str] = None
    error: Optional[ErrorDetail] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    executed_at: datetime = Field(default_factory=_utcnow)
    execution_time_ms: Optional[int] = None


class HandlerResult(_Spec):
    """Outcome of a deferred handler."""
    name: str
    status: ResultStatus
    message: Optional[str] = None
    error: Optional[ErrorDetail] = None
    executed_at: datetime = Field(default_factory=_utcnow)


class RunReport(_Spec):
    """Complete, read-only record of one run against one host."""
    run_id: str
    host: str
    policy_name: Optional[str] = None
    dry_run: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: List[ExecutionResult] = Field(default_factory=list)
    handler_results: List[HandlerResult] = Field(default_factory=list)
    halted_by: Optional[str] = None
    cancelled: bool = False

    @property
    def handlers_fired(self) -> List[str]:
        """Handlers that actually executed (successfully or not)."""
        return [h.name for h in self.handler_results if h.status != ResultStatus.SKIPPED]

    @property
    def failed_results(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.status == ResultStatus.FAILED]

    @property
    def failed_handlers(self) -> List[HandlerResult]:
        return [h for h in self.handler_results if h.status == ResultStatus.FAILED]

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    @property
    def exit_code(self) -> int:
        """0 clean, 1 non-fatal failures recorded, 2 halted or cancelled."""
        if self.halted or self.cancelled:
            return 2
        if self.failed_results or self.failed_handlers:
            return 1
        return 0

    def summary(self) -> Dict[str, int]:
        """Count results by status."""
        counts = {status.value: 0 for status in ResultStatus}
        for result in self.results:
            counts[result.status.value] += 1
        counts["handlers_fired"] = len(self.handlers_fired)
        counts["handlers_failed"] = len(self.failed_handlers)
        return counts
