from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

WorkflowStateType = Literal["INITIAL", "SYSTEM", "TASK", "QUERY", "TERMINAL"]
DisposalType = Literal["APPROVED", "REJECTED"]
TaskStatus = Literal["PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
QueryStatus = Literal["OPEN", "RESPONDED"]
ActorType = Literal["CITIZEN", "OFFICER", "SYSTEM"]

OPEN_TASK_STATUSES = ("PENDING", "IN_PROGRESS")
CITIZEN_ROLE = "CITIZEN"
SYSTEM_ROLE = "SYSTEM"


class WorkflowStateDefinition(BaseModel):
    state_id: str = Field(
        description="Workflow state identifier.", examples=["PENDING_AT_CLERK"]
    )
    type: WorkflowStateType = Field(description="Workflow state kind.", examples=["TASK"])
    role_id: Optional[str] = Field(
        default=None,
        description="Officer role that works the task opened for this state.",
        examples=["CLERK"],
    )
    sla_days: Optional[int] = Field(
        default=None,
        ge=0,
        description="Default SLA in working days for tasks opened for this state.",
        examples=[3],
    )
    disposal: Optional[DisposalType] = Field(
        default=None,
        description="Disposal outcome recorded when an application reaches this state.",
        examples=["APPROVED"],
    )


class WorkflowTransitionDefinition(BaseModel):
    transition_id: str = Field(description="Transition identifier.", examples=["CLERK_FORWARD"])
    from_state: str = Field(description="Source state.", examples=["PENDING_AT_CLERK"])
    to_state: str = Field(
        description="Destination state.", examples=["PENDING_AT_SR_ASSISTANT_ACCOUNTS"]
    )
    action: str = Field(description="Action that triggers the transition.", examples=["FORWARD"])
    role: str = Field(
        description="Required actor role: CITIZEN, SYSTEM, or an officer role id.",
        examples=["CLERK"],
    )
    sla_days: Optional[int] = Field(
        default=None,
        ge=0,
        description="SLA working days for the task opened at the destination state.",
        examples=[3],
    )
    query_transition_id: Optional[str] = Field(
        default=None,
        description="For QUERY transitions, the RESUBMIT transition that routes back to origin.",
        examples=["RESUBMIT_TO_CLERK"],
    )


class WorkflowDefinition(BaseModel):
    service_key: str = Field(description="Service identifier.", examples=["no_due_certificate"])
    version: str = Field(default="1.0.0", description="Definition version.", examples=["1.0.0"])
    display_name: Optional[str] = Field(
        default=None, description="Human readable service name.", examples=["No Due Certificate"]
    )
    states: List[WorkflowStateDefinition] = Field(description="Ordered workflow states.")
    transitions: List[WorkflowTransitionDefinition] = Field(description="Legal transitions.")
    officer_chain: List[str] = Field(
        description="Ordered officer roles an application passes through to disposal.",
        examples=[["CLERK", "SR_ASSISTANT_ACCOUNTS", "ACCOUNT_OFFICER"]],
    )
    query_response_days: int = Field(
        default=15,
        ge=1,
        description="Calendar days the applicant has to respond to a query.",
        examples=[10],
    )
    required_payload_fields: List[str] = Field(
        default_factory=list,
        description="Dotted payload paths that must be present at submission time.",
        examples=[["applicant.full_name", "property.upn"]],
    )


class ApplicationRecord(BaseModel):
    application_id: str = Field(
        description="Internal application identifier.", examples=["app_001"]
    )
    arn: Optional[str] = Field(
        default=None,
        description="Public application reference number, issued once at submission.",
        examples=["PUDA/2026/000001"],
    )
    authority_id: str = Field(description="Owning authority.", examples=["PUDA"])
    service_key: str = Field(description="Workflow service key.", examples=["no_due_certificate"])
    applicant_id: str = Field(description="Citizen user id.", examples=["citizen_001"])
    current_state: str = Field(description="Current workflow state.", examples=["DRAFT"])
    disposal_type: Optional[DisposalType] = Field(
        default=None, description="Disposal outcome.", examples=["APPROVED"]
    )
    disposed_at: Optional[datetime] = Field(
        default=None, description="Disposal timestamp.", examples=["2026-03-02T10:00:00+00:00"]
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Applicant-supplied application data.",
        examples=[{"applicant": {"full_name": "A. Singh"}}],
    )
    query_count: int = Field(default=0, description="Number of queries raised.", examples=[0])
    row_version: int = Field(default=1, description="Optimistic row version.", examples=[1])
    created_at: datetime = Field(
        description="Creation timestamp.", examples=["2026-03-01T09:00:00+00:00"]
    )
    updated_at: datetime = Field(
        description="Last update timestamp.", examples=["2026-03-01T09:00:00+00:00"]
    )
    submitted_at: Optional[datetime] = Field(
        default=None, description="Submission timestamp.", examples=["2026-03-01T09:05:00+00:00"]
    )


class TaskRecord(BaseModel):
    task_id: str = Field(description="Task identifier.", examples=["task_001"])
    application_id: str = Field(
        description="Owning application.", examples=["app_001"]
    )
    authority_id: str = Field(description="Authority of the owning application.", examples=["PUDA"])
    state_id: str = Field(
        description="State the task was opened for.", examples=["PENDING_AT_CLERK"]
    )
    role_id: str = Field(description="Officer role required to act.", examples=["CLERK"])
    assignee_id: Optional[str] = Field(
        default=None, description="Assigned officer.", examples=["officer_clerk_1"]
    )
    status: TaskStatus = Field(description="Task status.", examples=["PENDING"])
    sla_due_at: Optional[datetime] = Field(
        default=None, description="SLA due timestamp.", examples=["2026-03-04T09:05:00+00:00"]
    )
    remarks: Optional[str] = Field(default=None, description="Free-text remarks.", examples=["ok"])
    decision: Optional[str] = Field(
        default=None, description="Action that closed the task.", examples=["FORWARD"]
    )
    created_at: datetime = Field(
        description="Creation timestamp.", examples=["2026-03-01T09:05:00+00:00"]
    )
    started_at: Optional[datetime] = Field(
        default=None, description="Assignment timestamp.", examples=["2026-03-01T10:00:00+00:00"]
    )
    completed_at: Optional[datetime] = Field(
        default=None, description="Closing timestamp.", examples=["2026-03-02T10:00:00+00:00"]
    )


class QueryRecord(BaseModel):
    query_id: str = Field(description="Query identifier.", examples=["qry_001"])
    application_id: str = Field(
        description="Owning application.", examples=["app_001"]
    )
    query_number: int = Field(
        description="Sequence of this query on the application.", examples=[1]
    )
    message: str = Field(description="Officer query message.", examples=["Upload the NOC."])
    response_message: Optional[str] = Field(
        default=None, description="Applicant response.", examples=["Uploaded."]
    )
    status: QueryStatus = Field(description="Query status.", examples=["OPEN"])
    raised_by_id: str = Field(description="Officer who raised the query.", examples=["officer_1"])
    raised_by_role: str = Field(description="Role that raised the query.", examples=["CLERK"])
    raised_from_state: str = Field(
        description="State the query was raised from.", examples=["PENDING_AT_CLERK"]
    )
    return_transition_id: str = Field(
        description="Transition that routes the application back after the response.",
        examples=["RESUBMIT_TO_CLERK"],
    )
    unlocked_fields: List[str] = Field(
        default_factory=list,
        description="Dotted payload paths the applicant may change in the response.",
        examples=[["property.plot_number"]],
    )
    response_due_at: datetime = Field(
        description="Response deadline.", examples=["2026-03-16T09:00:00+00:00"]
    )
    raised_at: datetime = Field(
        description="Query timestamp.", examples=["2026-03-01T09:00:00+00:00"]
    )
    responded_at: Optional[datetime] = Field(
        default=None, description="Response timestamp.", examples=["2026-03-03T09:00:00+00:00"]
    )


class AuditEventRecord(BaseModel):
    event_id: str = Field(description="Audit event identifier.", examples=["evt_001"])
    chain_position: int = Field(description="Global chain position.", examples=[1])
    application_id: Optional[str] = Field(
        default=None, description="Related application.", examples=["app_001"]
    )
    event_type: str = Field(description="Event type.", examples=["STATE_CHANGED"])
    actor_type: ActorType = Field(description="Actor kind.", examples=["OFFICER"])
    actor_id: Optional[str] = Field(default=None, description="Actor id.", examples=["officer_1"])
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload.",
        examples=[{"from_state": "PENDING_AT_CLERK", "to_state": "APPROVED"}],
    )
    created_at: datetime = Field(
        description="Event timestamp, millisecond precision.",
        examples=["2026-03-01T09:00:00.123000+00:00"],
    )
    hash_version: str = Field(default="v1", description="Hash canonicalization version.")
    prev_event_hash: Optional[str] = Field(
        default=None, description="Hash of the preceding event.", examples=["GENESIS"]
    )
    event_hash: Optional[str] = Field(
        default=None, description="Hash of this event.", examples=["9f86d08188..."]
    )


class NotificationRecord(BaseModel):
    notification_id: str = Field(description="Notification identifier.", examples=["ntf_001"])
    user_id: str = Field(description="Recipient user id.", examples=["citizen_001"])
    application_id: Optional[str] = Field(
        default=None, description="Related application.", examples=["app_001"]
    )
    event_type: str = Field(description="Notification event.", examples=["APPLICATION_APPROVED"])
    title: str = Field(description="Notification title.", examples=["Application Approved"])
    message: str = Field(description="Notification body.")
    read: bool = Field(default=False, description="Read flag.")
    created_at: datetime = Field(
        description="Creation timestamp.", examples=["2026-03-01T09:00:00+00:00"]
    )


class OfficerPosting(BaseModel):
    user_id: str = Field(description="Officer user id.", examples=["officer_clerk_1"])
    authority_id: str = Field(description="Authority the officer is posted at.", examples=["PUDA"])
    role_ids: List[str] = Field(
        default_factory=list,
        description="Roles held at the authority.",
        examples=[["CLERK"]],
    )


class HolidayRecord(BaseModel):
    authority_id: str = Field(description="Authority observing the holiday.", examples=["PUDA"])
    holiday_date: date = Field(description="Holiday calendar date.", examples=["2026-01-26"])
    description: Optional[str] = Field(
        default=None, description="Holiday name.", examples=["Republic Day"]
    )


class TransitionOutcome(BaseModel):
    application_id: str = Field(
        description="Application identifier.", examples=["app_001"]
    )
    previous_state: str = Field(description="State before the transition.", examples=["DRAFT"])
    new_state: str = Field(description="State after the transition.", examples=["SUBMITTED"])
    transition_id: str = Field(description="Applied transition.", examples=["SUBMIT"])
    task_id: Optional[str] = Field(default=None, description="Task opened by the transition.")
    closed_task_id: Optional[str] = Field(
        default=None, description="Task closed by the transition."
    )
    query_id: Optional[str] = Field(default=None, description="Query opened by the transition.")
    disposal_type: Optional[DisposalType] = Field(
        default=None, description="Disposal recorded by the transition, if any."
    )
    event_id: str = Field(description="Audit event recorded for the transition.")


class ApplicationCreateRequest(BaseModel):
    service_key: str = Field(description="Workflow service key.", examples=["no_due_certificate"])
    authority_id: str = Field(description="Owning authority.", examples=["PUDA"])
    applicant_id: str = Field(description="Citizen user id.", examples=["citizen_001"])
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Initial application data.",
        examples=[{"applicant": {"full_name": "A. Singh"}, "property": {"upn": "PUDA-1"}}],
    )


class ApplicationPayloadUpdateRequest(BaseModel):
    actor_id: str = Field(description="Applicant user id.", examples=["citizen_001"])
    payload: Dict[str, Any] = Field(
        description="Payload fragment deep-merged into the draft.",
        examples=[{"property": {"plot_number": "12B"}}],
    )


class ApplicationSubmitRequest(BaseModel):
    actor_id: str = Field(description="Applicant user id.", examples=["citizen_001"])


class ActionRequest(BaseModel):
    action: str = Field(description="Workflow action.", examples=["FORWARD"])
    actor_id: str = Field(description="Acting user id.", examples=["officer_clerk_1"])
    actor_role: str = Field(description="Role the actor is acting in.", examples=["CLERK"])
    remarks: Optional[str] = Field(
        default=None, description="Free-text remarks.", examples=["Documents verified."]
    )
    query_message: Optional[str] = Field(
        default=None,
        description="Query message, required for QUERY.",
        examples=["Please upload the allotment letter."],
    )
    unlocked_fields: List[str] = Field(
        default_factory=list,
        description="Payload paths the applicant may edit when responding to a query.",
        examples=[["property.plot_number"]],
    )


class ActionResponse(BaseModel):
    success: bool = Field(description="Whether the action was applied.", examples=[True])
    new_state_id: str = Field(
        description="Application state after the action.",
        examples=["PENDING_AT_SR_ASSISTANT_ACCOUNTS"],
    )
    task_id: Optional[str] = Field(default=None, description="Newly opened task, if any.")
    query_id: Optional[str] = Field(default=None, description="Newly opened query, if any.")


class TaskAssignRequest(BaseModel):
    officer_id: str = Field(description="Officer taking the task.", examples=["officer_clerk_1"])


class QueryResponseRequest(BaseModel):
    actor_id: str = Field(description="Applicant user id.", examples=["citizen_001"])
    response_message: str = Field(
        description="Applicant response to the query.", examples=["Allotment letter uploaded."]
    )
    updated_payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Payload fragment limited to the unlocked fields.",
        examples=[{"property": {"plot_number": "12B"}}],
    )


class AuditFeedEvent(BaseModel):
    event_type: str = Field(description="Event type.", examples=["STATE_CHANGED"])
    actor_type: ActorType = Field(description="Actor kind.", examples=["OFFICER"])
    actor_id: Optional[str] = Field(default=None, description="Actor id.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload.")
    created_at: datetime = Field(description="Event timestamp.")


class AuditFeedResponse(BaseModel):
    application_id: str = Field(
        description="Application identifier.", examples=["app_001"]
    )
    events: List[AuditFeedEvent] = Field(description="Events in chain order.")


class ChainMismatch(BaseModel):
    reason: Literal[
        "HASH_MISSING",
        "PREV_HASH_MISMATCH",
        "EVENT_HASH_MISMATCH",
        "UNSUPPORTED_HASH_VERSION",
    ] = Field(description="Mismatch kind.", examples=["EVENT_HASH_MISMATCH"])
    index: int = Field(description="Zero-based index within the verified range.", examples=[4])
    chain_position: int = Field(description="Chain position of the bad event.", examples=[5])
    event_id: str = Field(description="Bad event identifier.", examples=["evt_005"])
    expected_prev_hash: Optional[str] = Field(default=None)
    actual_prev_hash: Optional[str] = Field(default=None)
    expected_event_hash: Optional[str] = Field(default=None)
    actual_event_hash: Optional[str] = Field(default=None)


class ChainVerificationResult(BaseModel):
    ok: bool = Field(description="True when every verified event matched.", examples=[True])
    checked: int = Field(description="Number of events verified.", examples=[120])
    mismatch: Optional[ChainMismatch] = Field(
        default=None, description="First mismatch found, if any."
    )

    @property
    def mismatch_event_id(self) -> Optional[str]:
        return self.mismatch.event_id if self.mismatch is not None else None


class BreachSweepResult(BaseModel):
    breached_tasks: int = Field(description="Open tasks past their SLA.", examples=[3])
    breach_events_created: int = Field(description="New SLA_BREACHED events.", examples=[1])
    notifications_created: int = Field(description="Breach notifications written.", examples=[1])
    errors: List[str] = Field(default_factory=list, description="Batch failures.")


class BacklogMetrics(BaseModel):
    open_tasks: int = Field(description="Tasks pending or in progress.", examples=[12])
    overdue_tasks: int = Field(description="Open tasks past their SLA.", examples=[2])
    measured_at: datetime = Field(description="Measurement timestamp.")


class WorkflowSummary(BaseModel):
    service_key: str = Field(description="Service key.", examples=["no_due_certificate"])
    version: str = Field(description="Definition version.", examples=["1.0.0"])
    display_name: Optional[str] = Field(default=None)
    officer_chain: List[str] = Field(description="Ordered officer roles.")
