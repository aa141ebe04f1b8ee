from decimal import Decimal

import pytest

from conftest import (
    MANAGER_ID,
    OTHER_REGION_ID,
    agent_a,
    agent_b,
    ceo,
    east_manager,
    make_actor,
    make_loan,
    manager_m,
    moderator,
    super_admin,
)
from loanflow.core.exceptions import AuthorizationError
from loanflow.core.permissions import ROLE_PERMISSIONS, Permission, Role
from loanflow.schemas.loan import LoanListFilter, LoanStatus, WorkflowStage
from loanflow.services import authz
from loanflow.services.authz import LoanAction

THRESHOLD = Decimal("1000000")


def _allowed(actor, loan, action):
    return authz.authorize(actor, loan, action, high_value_threshold=THRESHOLD)


def test_role_hierarchy_order():
    assert Role.AGENT.rank < Role.REGIONAL_MANAGER.rank < Role.CEO.rank
    assert Role.CEO.rank < Role.MODERATE_ADMIN.rank < Role.SUPER_ADMIN.rank
    assert Role.MODERATE_ADMIN.at_least(Role.CEO)
    assert not Role.REGIONAL_MANAGER.at_least(Role.CEO)


def test_every_role_has_permissions_and_super_admin_has_all():
    assert set(ROLE_PERMISSIONS) == set(Role)
    assert ROLE_PERMISSIONS[Role.SUPER_ADMIN] == frozenset(Permission)


def test_role_parsing_is_strict():
    assert Role.parse("regional_manager") == Role.REGIONAL_MANAGER
    with pytest.raises(ValueError):
        Role.parse("Regional_Manager")
    with pytest.raises(ValueError):
        Role.parse("teller")


def test_only_assigned_agent_may_review():
    loan = make_loan()
    assert _allowed(agent_a(), loan, LoanAction.AGENT_REVIEW)
    decision = authz.evaluate(agent_b(), loan, LoanAction.AGENT_REVIEW, high_value_threshold=THRESHOLD)
    assert decision.allowed is False
    assert "assigned agent" in decision.reason


def test_agent_cannot_approve_regionally():
    loan = make_loan(current_stage=WorkflowStage.AGENT_APPROVED)
    decision = authz.evaluate(agent_a(), loan, LoanAction.REGIONAL_APPROVE, high_value_threshold=THRESHOLD)
    assert not decision
    assert Permission.LOAN_APPROVE.value in decision.reason


def test_regional_manager_assignment_or_region_match():
    loan = make_loan()
    assert _allowed(manager_m(), loan, LoanAction.REGIONAL_APPROVE)

    same_region_other_manager = make_actor(Role.REGIONAL_MANAGER, "rm-other")
    assert _allowed(same_region_other_manager, loan, LoanAction.REGIONAL_APPROVE)

    assert not _allowed(east_manager(), loan, LoanAction.REGIONAL_APPROVE)

    moved = make_loan(region_id=OTHER_REGION_ID, assigned_regional_manager_id=MANAGER_ID)
    assert _allowed(manager_m(), moved, LoanAction.REGIONAL_APPROVE)


def test_high_value_approval_requires_ceo_or_above():
    loan = make_loan(principal="1500000")
    assert not _allowed(manager_m(), loan, LoanAction.REGIONAL_APPROVE)
    assert _allowed(ceo(), loan, LoanAction.REGIONAL_APPROVE)
    assert _allowed(moderator(), loan, LoanAction.REGIONAL_APPROVE)
    assert _allowed(super_admin(), loan, LoanAction.REGIONAL_APPROVE)


def test_threshold_itself_is_not_high_value():
    loan = make_loan(principal="1000000")
    assert not authz.is_high_value(loan, THRESHOLD)
    assert _allowed(manager_m(), loan, LoanAction.REGIONAL_APPROVE)


def test_ceo_needs_approve_permission_below_threshold():
    assert not _allowed(ceo(), make_loan(), LoanAction.REGIONAL_APPROVE)


def test_high_value_rejection_allowed_for_manager_and_ceo():
    loan = make_loan(principal="2000000")
    assert _allowed(manager_m(), loan, LoanAction.REGIONAL_REJECT)
    assert _allowed(ceo(), loan, LoanAction.REGIONAL_REJECT)
    assert not _allowed(ceo(), make_loan(), LoanAction.REGIONAL_REJECT)


def test_moderate_admin_bypasses_assignment_but_not_permissions():
    loan = make_loan(assigned_agent_id="someone-else", region_id=OTHER_REGION_ID)
    assert _allowed(moderator(), loan, LoanAction.DISBURSE)
    assert _allowed(moderator(), loan, LoanAction.COMPLETE)
    assert not _allowed(moderator(), loan, LoanAction.AGENT_REVIEW)


def test_super_admin_bypasses_everything():
    loan = make_loan(assigned_agent_id="someone-else", region_id=OTHER_REGION_ID)
    for action in LoanAction:
        assert _allowed(super_admin(), loan, action)


def test_require_raises_authorization_error():
    with pytest.raises(AuthorizationError) as exc_info:
        authz.require(agent_b(), make_loan(), LoanAction.AGENT_REVIEW, high_value_threshold=THRESHOLD)
    assert exc_info.value.details == {"action": "agent_review", "role": "agent"}


def test_create_needs_permission_only():
    assert _allowed(agent_a(), None, LoanAction.CREATE_APPLICATION)
    assert not _allowed(ceo(), None, LoanAction.CREATE_APPLICATION)


@pytest.mark.parametrize(
    "current,target,action",
    [
        (WorkflowStage.APPLICATION_SUBMITTED, WorkflowStage.AGENT_APPROVED, LoanAction.AGENT_REVIEW),
        (WorkflowStage.AGENT_APPROVED, WorkflowStage.REGIONAL_REJECTED, LoanAction.REGIONAL_REJECT),
        (WorkflowStage.REGIONAL_APPROVED, WorkflowStage.AGREEMENT_GENERATED, LoanAction.GENERATE_AGREEMENT),
        (WorkflowStage.AGREEMENT_GENERATED, WorkflowStage.FUNDS_DISBURSED, LoanAction.DISBURSE),
        (WorkflowStage.FUNDS_DISBURSED, WorkflowStage.LOAN_ACTIVE, LoanAction.ACTIVATE),
        (WorkflowStage.DEFAULTED, WorkflowStage.LOAN_ACTIVE, LoanAction.REINSTATE),
        (WorkflowStage.LOAN_ACTIVE, WorkflowStage.DEFAULTED, LoanAction.MARK_DEFAULT),
    ],
)
def test_action_for_transition(current, target, action):
    assert authz.action_for_transition(current, target) == action


def test_no_action_leads_back_to_submission():
    with pytest.raises(ValueError):
        authz.action_for_transition(WorkflowStage.AGENT_APPROVED, WorkflowStage.APPLICATION_SUBMITTED)


def test_list_scope_for_agent_is_own_loans():
    query = authz.scope_query(agent_a(), LoanListFilter())
    assert query.assigned_agent_id == agent_a().id
    assert authz.scope_query(agent_a(), LoanListFilter(assigned_agent_id="agent-b")) is None


def test_list_scope_for_manager_is_region_and_never_widens():
    query = authz.scope_query(manager_m(), LoanListFilter(status=LoanStatus.ACTIVE))
    assert query.region_id == manager_m().region_id
    assert query.stages == {WorkflowStage.FUNDS_DISBURSED, WorkflowStage.LOAN_ACTIVE}
    assert authz.scope_query(manager_m(), LoanListFilter(region_id=OTHER_REGION_ID)) is None


def test_list_scope_for_ceo_is_unrestricted():
    query = authz.scope_query(ceo(), LoanListFilter(region_id=OTHER_REGION_ID, stage=WorkflowStage.DEFAULTED))
    assert query.region_id == OTHER_REGION_ID
    assert query.assigned_agent_id is None
    assert query.stages == {WorkflowStage.DEFAULTED}
