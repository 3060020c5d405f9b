"""Typed models for the JobSet resource.

The persisted form is camelCase; models accept either the alias or the
field name and dump back with aliases.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from . import crd


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Operator(str, Enum):
    """Success policy operator."""

    ALL = crd.OPERATOR_ALL
    ANY = crd.OPERATOR_ANY


class Network(_Model):
    enable_dns_hostnames: Optional[bool] = Field(default=None, alias="enableDNSHostnames")


class ReplicatedJob(_Model):
    """A named member template, replicated ``replicas`` times."""

    name: str
    replicas: int = Field(default=1, gt=0)
    job_template: Dict[str, Any] = Field(alias="jobTemplate")
    network: Optional[Network] = None

    @property
    def dns_hostnames_enabled(self) -> bool:
        return bool(self.network and self.network.enable_dns_hostnames)

    @property
    def pod_spec(self) -> Dict[str, Any]:
        return self.job_template.get("spec", {}).get("template", {}).get("spec", {})


class FailurePolicy(_Model):
    max_restarts: int = Field(default=0, ge=0, alias="maxRestarts")


class SuccessPolicy(_Model):
    operator: Operator = Operator.ALL
    targets: List[str] = Field(default_factory=list)

    def target_names(self, members: List[ReplicatedJob]) -> List[str]:
        """Targeted member names; an empty target list means every member."""
        if self.targets:
            return list(self.targets)
        return [member.name for member in members]


class JobSetSpec(_Model):
    members: List[ReplicatedJob] = Field(min_length=1)
    failure_policy: Optional[FailurePolicy] = Field(default=None, alias="failurePolicy")
    success_policy: SuccessPolicy = Field(default_factory=SuccessPolicy, alias="successPolicy")
    suspend: bool = False

    @property
    def max_restarts(self) -> int:
        return self.failure_policy.max_restarts if self.failure_policy else 0

    def member(self, name) -> Optional[ReplicatedJob]:
        for member in self.members:
            if member.name == name:
                return member
        return None


class Condition(_Model):
    type: str
    status: str
    reason: str = ""
    message: Optional[str] = None
    last_transition_time: Optional[str] = Field(default=None, alias="lastTransitionTime")

    @property
    def is_true(self) -> bool:
        return self.status == "True"


class MemberStatus(_Model):
    """Replica counts for one member; ``phase`` is derived and never persisted."""

    name: str
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    phase: str = Field(default="Active", exclude=True)


class JobSetStatus(_Model):
    conditions: List[Condition] = Field(default_factory=list)
    restarts: int = Field(default=0, ge=0)
    per_member: List[MemberStatus] = Field(default_factory=list, alias="perMember")

    @classmethod
    def from_body(cls, status) -> "JobSetStatus":
        """Parse the status stanza of a JobSet, ignoring foreign keys."""
        status = status or {}
        return cls.model_validate(
            {key: status[key] for key in ("conditions", "restarts", "perMember") if key in status}
        )
