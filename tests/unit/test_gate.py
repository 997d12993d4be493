from custodian.contracts import ApprovalGate, DependencyStatus, DependencyTemplate, DependencyType
from custodian.gate import GateOutcome, can_execute
from custodian.models import ApprovalStatus


def test_ready_when_nothing_outstanding(make_request):
    request = make_request()
    decision = can_execute(request, request.workflow.steps[0])
    assert decision.ready
    assert decision.outcome == GateOutcome.READY


def test_step_edge_blocks_until_upstream_completes(make_request):
    request = make_request()
    execute = request.step("execute")

    decision = can_execute(request, execute)
    assert decision.outcome == GateOutcome.BLOCKED_BY_DEPENDENCY
    assert [d.id for d in decision.blocking] == ["prepare"]

    request.dependency("prepare").status = DependencyStatus.RESOLVED
    assert can_execute(request, execute).ready


def test_non_blocking_dependency_does_not_gate(make_definition, make_request):
    definition = make_definition(
        dependencies=[
            DependencyTemplate(id="advisory", type=DependencyType.EXTERNAL, blocking=False)
        ]
    )
    definition.steps[0].dependencies.append("advisory")
    request = make_request(definition=definition)
    assert can_execute(request, request.workflow.steps[0]).ready


def test_all_required_approvals_must_be_granted(make_definition, make_request):
    definition = make_definition(
        approval_gates=[
            ApprovalGate(step_id="prepare", approver_role="legal"),
            ApprovalGate(step_id="prepare", approver_role="finance"),
            ApprovalGate(step_id="prepare", approver_role="observer", required=False),
        ]
    )
    request = make_request(definition=definition)
    step = request.workflow.steps[0]

    decision = can_execute(request, step)
    assert decision.outcome == GateOutcome.WAITING_APPROVAL
    assert {a.approver_role for a in decision.awaiting} == {"legal", "finance"}
    assert len(decision.to_request) == 2

    legal, finance, _ = request.approvals
    legal.status = ApprovalStatus.APPROVED
    finance.status = ApprovalStatus.REQUESTED
    decision = can_execute(request, step)
    assert [a.approver_role for a in decision.awaiting] == ["finance"]
    assert decision.to_request == []

    finance.status = ApprovalStatus.APPROVED
    assert can_execute(request, step).ready


def test_gate_does_not_modify_request(make_definition, make_request):
    definition = make_definition(
        approval_gates=[ApprovalGate(step_id="prepare", approver_role="legal")]
    )
    request = make_request(definition=definition)
    before = request.model_dump()
    can_execute(request, request.workflow.steps[0])
    can_execute(request, request.step("execute"))
    assert request.model_dump() == before
