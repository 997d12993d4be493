"""Standard account-closure and data-subject-request templates."""

from __future__ import annotations

from typing import List

from ..contracts import (
    ActionType,
    ApprovalGate,
    ApprovalStep,
    AutomatedStep,
    ComplianceCheck,
    ComplianceCheckStep,
    Criticality,
    DataOperation,
    DataProcessingStep,
    DependencyTemplate,
    DependencyType,
    ManualStep,
    MilestoneTemplate,
    NotificationStep,
    RequestReason,
    RetryPolicy,
    BackoffStrategy,
    RollbackConfig,
    RollbackStepTemplate,
    StepAction,
    StepValidation,
    ValidationFailureAction,
    WorkflowDefinition,
)


def _account_closure(key: str, name: str) -> WorkflowDefinition:
    return WorkflowDefinition(
        key=key,
        name=name,
        description="Close a customer account and dispose of its data",
        steps=[
            ManualStep(
                id="initial_review",
                name="Initial Review",
                description="Review closure request and validate requirements",
                instructions="Confirm identity and that no legal hold applies",
                actions=[
                    StepAction(
                        type=ActionType.API_CALL,
                        description="Validate account status",
                        parameters={"service": "account_service", "method": "validateStatus"},
                        timeout=5,
                    )
                ],
                validations=[
                    StepValidation(
                        rule="approvals_granted",
                        description="Manager sign-off recorded",
                    )
                ],
                timeout_minutes=120,
                estimated_minutes=60,
            ),
            DataProcessingStep(
                id="data_backup",
                name="Data Backup",
                description="Create comprehensive backup of account data",
                operation=DataOperation.BACKUP,
                dependencies=["initial_review"],
                actions=[
                    StepAction(
                        type=ActionType.DATA_PROCESSING,
                        description="Execute data backup",
                        parameters={"include_archived": True},
                        timeout=120,
                    )
                ],
                validations=[
                    StepValidation(
                        rule="actions_applied",
                        description="Verify backup integrity",
                        failure_action=ValidationFailureAction.RETRY,
                    )
                ],
                max_retries=1,
                estimated_minutes=120,
            ),
            AutomatedStep(
                id="position_closure",
                name="Position Closure",
                description="Close open positions and settle balances",
                dependencies=["data_backup", "trading_system", "settlement"],
                actions=[
                    StepAction(
                        type=ActionType.API_CALL,
                        description="Liquidate open positions",
                        parameters={"service": "trading_service"},
                        timeout=60,
                        irreversible=True,
                    )
                ],
                validations=[StepValidation(rule="dependencies_resolved")],
                estimated_minutes=240,
            ),
            NotificationStep(
                id="notification_sending",
                name="Notification Sending",
                template="account_closure_notice",
                recipients=["subject", "operations_team"],
                dependencies=["position_closure"],
                estimated_minutes=15,
            ),
            AutomatedStep(
                id="system_deactivation",
                name="System Deactivation",
                description="Revoke access and deactivate the account",
                dependencies=["notification_sending"],
                actions=[
                    StepAction(
                        type=ActionType.DATABASE_OPERATION,
                        description="Set account status to closed",
                        parameters={"status": "closed"},
                        timeout=5,
                    )
                ],
                estimated_minutes=30,
            ),
            DataProcessingStep(
                id="data_deletion",
                name="Data Deletion",
                description="Delete personal data outside retention obligations",
                operation=DataOperation.DELETION,
                dependencies=["system_deactivation"],
                actions=[
                    StepAction(
                        type=ActionType.DATA_PROCESSING,
                        description="Purge personal data",
                        timeout=300,
                        irreversible=True,
                    )
                ],
                reversible=False,
                estimated_minutes=120,
            ),
            ComplianceCheckStep(
                id="compliance_verification",
                name="Compliance Verification",
                dependencies=["data_deletion"],
                checks=[
                    ComplianceCheck(
                        regulation="GDPR",
                        requirement="Art. 17 erasure completed",
                        rule="dependencies_resolved",
                    )
                ],
                estimated_minutes=60,
            ),
            NotificationStep(
                id="final_confirmation",
                name="Final Confirmation",
                template="account_closure_confirmation",
                dependencies=["compliance_verification"],
                estimated_minutes=5,
            ),
        ],
        dependencies=[
            DependencyTemplate(
                id="trading_system",
                type=DependencyType.SYSTEM,
                description="Trading system must be accessible for position closure",
                dependent_on="trading_system",
                criticality=Criticality.HIGH,
                escalation_path=["operations_manager", "cto"],
            ),
            DependencyTemplate(
                id="settlement",
                type=DependencyType.DATA,
                description="All pending transactions must be settled",
                dependent_on="settlement_system",
                criticality=Criticality.CRITICAL,
                escalation_path=["operations_manager"],
            ),
        ],
        approval_gates=[
            ApprovalGate(
                step_id="initial_review",
                approver_role="account_manager",
                escalate_to=["operations_manager"],
                reasons=[RequestReason.USER_REQUEST],
            )
        ],
        retry_policy=RetryPolicy(
            strategy=BackoffStrategy.EXPONENTIAL, base_delay=60, max_delay=300
        ),
        rollback=RollbackConfig(
            point_of_no_return="data_deletion",
            time_window_hours=72,
            disabled_for=["regulatory_closure"],
            steps=[
                RollbackStepTemplate(
                    name="Restore Account Status",
                    description="Restore account to active status",
                    target_step_id="system_deactivation",
                    actions=[
                        StepAction(
                            type=ActionType.DATABASE_OPERATION,
                            description="Update account status to active",
                            parameters={"status": "active"},
                            timeout=5,
                        )
                    ],
                    verifications=[
                        StepValidation(
                            rule="actions_applied",
                            description="Account status equals active",
                        )
                    ],
                )
            ],
        ),
        milestones=[
            MilestoneTemplate(
                name="Initial Review Complete",
                step_ids=["initial_review"],
                offset_days=1,
            ),
            MilestoneTemplate(
                name="Data Processing Complete",
                step_ids=["data_backup", "data_deletion"],
                offset_days=3,
            ),
        ],
    )


def _regulatory_closure() -> WorkflowDefinition:
    definition = _account_closure("regulatory_closure", "Regulatory Account Closure")
    definition.allowed_reasons = [RequestReason.REGULATORY_ORDER, RequestReason.SANCTIONS]
    definition.manual_review = True
    return definition


def _data_access() -> WorkflowDefinition:
    return WorkflowDefinition(
        key="data_access",
        name="Data Subject Access Request",
        description="Collect and deliver a copy of the subject's personal data",
        steps=[
            ManualStep(
                id="identity_verification",
                name="Identity Verification",
                instructions="Verify the requester is the data subject",
                timeout_minutes=24 * 60,
                estimated_minutes=30,
            ),
            DataProcessingStep(
                id="data_collection",
                name="Data Collection",
                operation=DataOperation.EXPORT,
                dependencies=["identity_verification"],
                actions=[
                    StepAction(
                        type=ActionType.DATA_PROCESSING,
                        description="Export personal data from all stores",
                        parameters={"format": "json"},
                        timeout=600,
                    )
                ],
                validations=[StepValidation(rule="actions_applied")],
                estimated_minutes=240,
            ),
            ComplianceCheckStep(
                id="disclosure_review",
                name="Disclosure Review",
                dependencies=["data_collection"],
                checks=[
                    ComplianceCheck(
                        regulation="GDPR",
                        requirement="Art. 15 third-party data redacted",
                        rule="actions_applied",
                    )
                ],
                estimated_minutes=60,
            ),
            NotificationStep(
                id="delivery",
                name="Delivery",
                template="data_export_ready",
                dependencies=["disclosure_review"],
                estimated_minutes=5,
            ),
        ],
        rollback=RollbackConfig(enabled=False),
    )


def _data_erasure() -> WorkflowDefinition:
    return WorkflowDefinition(
        key="data_erasure",
        name="Data Subject Erasure Request",
        description="Erase the subject's personal data after review",
        steps=[
            ManualStep(
                id="identity_verification",
                name="Identity Verification",
                instructions="Verify the requester is the data subject",
                estimated_minutes=30,
            ),
            ApprovalStep(
                id="erasure_approval",
                name="Erasure Approval",
                dependencies=["identity_verification"],
                validations=[StepValidation(rule="approvals_granted")],
                timeout_minutes=72 * 60,
                estimated_minutes=60,
            ),
            DataProcessingStep(
                id="data_backup",
                name="Data Backup",
                operation=DataOperation.BACKUP,
                dependencies=["erasure_approval"],
                estimated_minutes=60,
            ),
            DataProcessingStep(
                id="data_deletion",
                name="Data Deletion",
                operation=DataOperation.DELETION,
                dependencies=["data_backup"],
                actions=[
                    StepAction(
                        type=ActionType.DATA_PROCESSING,
                        description="Erase personal data",
                        timeout=600,
                        irreversible=True,
                    )
                ],
                reversible=False,
                estimated_minutes=120,
            ),
            NotificationStep(
                id="erasure_confirmation",
                name="Erasure Confirmation",
                template="data_erasure_confirmation",
                dependencies=["data_deletion"],
                estimated_minutes=5,
            ),
        ],
        approval_gates=[
            ApprovalGate(
                step_id="erasure_approval",
                approver_role="data_protection_officer",
                escalate_to=["head_of_compliance"],
            )
        ],
        rollback=RollbackConfig(point_of_no_return="data_deletion", time_window_hours=24),
    )


def builtin_definitions() -> List[WorkflowDefinition]:
    """Templates registered when no definitions file is configured.

    ``default`` is the standard account closure, used for any process type
    without a dedicated template.
    """
    return [
        _account_closure("default", "Standard Account Closure"),
        _account_closure("account_closure", "Standard Account Closure"),
        _regulatory_closure(),
        _data_access(),
        _data_erasure(),
    ]
