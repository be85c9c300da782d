"""Claim approval workflow.

The role/status table lives in one place: an ordered tuple of
:class:`WorkflowStage` per claim type. A stage acts on the status produced by
the stage before it (the first stage acts on ``submitted``), and the role after
the last stage is always finance.

Active ``WorkflowConfig`` records in the entity store replace the default
stages for their workflow type when the resolver is built with
:meth:`WorkflowResolver.from_store`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from expense_portal.core import slug
from expense_portal.statuses import (
    APPROVAL_CLAIM_STATUSES,
    PAYABLE_CLAIM_STATUSES,
    STAGE_APPROVER_ROLES,
    ClaimStatus,
    ClaimType,
    PortalRole,
    is_terminal,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowStage:
    stage_order: int
    stage: str
    stage_name: str
    approver_role: str
    status_on_approve: str
    is_active: bool = True
    can_skip_for_torch_bearer: bool = False

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "WorkflowStage":
        name = raw.get("stage_name") or f"Stage {raw['stage_order']}"
        return cls(
            stage_order=int(raw["stage_order"]),
            stage=raw.get("stage") or slug(name),
            stage_name=name,
            approver_role=raw["approver_role"],
            status_on_approve=raw["status_on_approve"],
            is_active=bool(raw.get("is_active", True)),
            can_skip_for_torch_bearer=bool(raw.get("can_skip_for_torch_bearer", False)),
        )


DEFAULT_STAGES: dict[str, tuple[WorkflowStage, ...]] = {
    ClaimType.NORMAL.value: (
        WorkflowStage(1, "verification", "Verification", "junior_admin", "verified"),
        WorkflowStage(
            2, "manager_approval", "Manager Approval", "manager", "manager_approved",
            can_skip_for_torch_bearer=True,
        ),
        WorkflowStage(3, "admin_approval", "Admin Head Approval", "admin_head", "admin_approved"),
    ),
    ClaimType.SALES_PROMOTION.value: (
        WorkflowStage(1, "manager_approval", "Manager Approval", "manager", "manager_approved"),
        WorkflowStage(2, "cro_approval", "CRO Approval", "cro", "cro_approved"),
        WorkflowStage(3, "cfo_approval", "CFO Approval", "cfo", "cfo_approved"),
    ),
}


@dataclass(frozen=True)
class ResolvedAction:
    can_act: bool
    stage: WorkflowStage | None = None
    next_status_on_approve: str | None = None
    next_approver_role: str | None = None
    can_send_back: bool = False


NOT_ELIGIBLE = ResolvedAction(can_act=False)


def validate_stages(workflow_type: str, stages: Sequence[WorkflowStage]) -> None:
    """Raise ValueError unless the active stages form a chain that ends in a payable status.

    Each stage needs an approving role (not employee, not finance) and a distinct
    approval status, and stage orders must be unique. The last stage may not be
    skippable, or a torch-bearer claim would stop short of finance.
    """
    if not stages:
        raise ValueError(f"Workflow {workflow_type} has no active stages")

    orders = [s.stage_order for s in stages]
    if len(set(orders)) != len(orders):
        raise ValueError(f"Workflow {workflow_type} has duplicate stage orders")

    for stage in stages:
        if stage.approver_role not in STAGE_APPROVER_ROLES:
            raise ValueError(f"Stage {stage.stage_name!r}: {stage.approver_role!r} cannot approve a stage")
        if stage.status_on_approve not in APPROVAL_CLAIM_STATUSES:
            raise ValueError(f"Stage {stage.stage_name!r}: {stage.status_on_approve!r} is not an approval status")

    statuses = [s.status_on_approve for s in stages]
    if len(set(statuses)) != len(statuses):
        raise ValueError(f"Workflow {workflow_type} repeats an approval status")
    if statuses[-1] not in PAYABLE_CLAIM_STATUSES:
        raise ValueError(
            f"Workflow {workflow_type} must end in one of {sorted(PAYABLE_CLAIM_STATUSES)}, not {statuses[-1]!r}"
        )
    if stages[-1].can_skip_for_torch_bearer:
        raise ValueError(f"Workflow {workflow_type}: the last stage cannot be skipped")


class WorkflowDefinition:
    """Active stages of one workflow type, in approval order."""

    def __init__(self, workflow_type: str, stages: Iterable[WorkflowStage]):
        self.workflow_type = workflow_type
        self.stages: tuple[WorkflowStage, ...] = tuple(
            sorted((s for s in stages if s.is_active), key=lambda s: s.stage_order)
        )
        validate_stages(workflow_type, self.stages)

    def stages_for(self, claim: Mapping[str, Any], honor_torch_bearer_skip: bool = False) -> list[WorkflowStage]:
        if honor_torch_bearer_skip and claim.get("is_torch_bearer"):
            return [s for s in self.stages if not s.can_skip_for_torch_bearer]
        return list(self.stages)

    def locate(
        self, claim: Mapping[str, Any], honor_torch_bearer_skip: bool = False
    ) -> tuple[WorkflowStage | None, str | None]:
        """Return the stage that acts on the claim's current status and the role after it."""
        stages = self.stages_for(claim, honor_torch_bearer_skip)
        acts_on = ClaimStatus.SUBMITTED.value
        for index, stage in enumerate(stages):
            if claim.get("status") == acts_on:
                if index + 1 < len(stages):
                    next_role = stages[index + 1].approver_role
                else:
                    next_role = PortalRole.FINANCE.value
                return stage, next_role
            acts_on = stage.status_on_approve
        return None, None

    def first_approver_role(self, claim: Mapping[str, Any] | None = None, honor_torch_bearer_skip: bool = False) -> str:
        return self.stages_for(claim or {}, honor_torch_bearer_skip)[0].approver_role

    def role_sequence(self) -> list[str]:
        return [s.approver_role for s in self.stages] + [PortalRole.FINANCE.value]

    def status_sequence(self) -> list[str]:
        return [ClaimStatus.SUBMITTED.value] + [s.status_on_approve for s in self.stages]

    @property
    def payable_status(self) -> str:
        return self.stages[-1].status_on_approve


class WorkflowResolver:
    def __init__(
        self,
        definitions: Mapping[str, WorkflowDefinition] | None = None,
        send_back_roles: Sequence[str] = (PortalRole.JUNIOR_ADMIN.value,),
        honor_torch_bearer_skip: bool = False,
    ):
        resolved = {
            workflow_type: WorkflowDefinition(workflow_type, stages)
            for workflow_type, stages in DEFAULT_STAGES.items()
        }
        resolved.update(definitions or {})
        self.definitions: dict[str, WorkflowDefinition] = resolved
        self.send_back_roles = frozenset(send_back_roles)
        self.honor_torch_bearer_skip = honor_torch_bearer_skip

    @classmethod
    def from_store(cls, store: Any, **kwargs: Any) -> "WorkflowResolver":
        definitions: dict[str, WorkflowDefinition] = {}
        for record in store.workflow_configs.filter({"is_active": True}, sort="-updated_date"):
            workflow_type = record.get("workflow_type")
            if workflow_type in definitions or workflow_type not in DEFAULT_STAGES:
                continue
            try:
                stages = [WorkflowStage.from_config(raw) for raw in record.get("stages") or []]
                definitions[workflow_type] = WorkflowDefinition(workflow_type, stages)
            except (KeyError, ValueError):
                logger.warning("Ignoring invalid WorkflowConfig %s for %s", record.get("id"), workflow_type)
                continue
            logger.info("Using WorkflowConfig %s for %s claims", record["id"], workflow_type)
        return cls(definitions, **kwargs)

    def definition(self, claim_type: str) -> WorkflowDefinition:
        try:
            return self.definitions[claim_type]
        except KeyError:
            raise ValueError(f"Unknown claim type: {claim_type!r}") from None

    def resolve_action(self, claim: Mapping[str, Any], acting_role: str) -> ResolvedAction:
        if is_terminal(claim.get("status") or ""):
            return NOT_ELIGIBLE
        definition = self.definitions.get(claim.get("claim_type") or ClaimType.NORMAL.value)
        if definition is None:
            return NOT_ELIGIBLE
        stage, next_role = definition.locate(claim, self.honor_torch_bearer_skip)
        if stage is None or stage.approver_role != acting_role:
            return NOT_ELIGIBLE
        return ResolvedAction(
            can_act=True,
            stage=stage,
            next_status_on_approve=stage.status_on_approve,
            next_approver_role=next_role,
            can_send_back=acting_role in self.send_back_roles,
        )

    def pending_for_role(self, claims: Iterable[Mapping[str, Any]], acting_role: str) -> list[Mapping[str, Any]]:
        return [claim for claim in claims if self.resolve_action(claim, acting_role).can_act]

    def first_approver_role(self, claim: Mapping[str, Any]) -> str:
        return self.definition(claim["claim_type"]).first_approver_role(claim, self.honor_torch_bearer_skip)

    def role_sequence(self, claim_type: str) -> list[str]:
        return self.definition(claim_type).role_sequence()

    def payable_status(self, claim_type: str) -> str:
        return self.definition(claim_type).payable_status

    def payable_statuses(self) -> frozenset:
        return frozenset(d.payable_status for d in self.definitions.values())
