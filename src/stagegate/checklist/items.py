"""Built-in checklist items: three per workflow stage, plus role-scoped review checks."""

from __future__ import annotations

from ..task_engine.model import WorkflowStage
from .registry import ChecklistItemDefinition


def _item(
    stage: WorkflowStage,
    item_id: str,
    title: str,
    description: str,
    *,
    required: bool = True,
    evidence_required: bool = False,
) -> ChecklistItemDefinition:
    return ChecklistItemDefinition(
        id=item_id,
        title=title,
        description=description,
        required=required,
        priority="high" if required else "medium",
        evidence_required=evidence_required,
        stages=(stage,),
        source="default",
    )


_S = WorkflowStage

DEFAULT_ITEMS: tuple[ChecklistItemDefinition, ...] = (
    _item(_S.UNDERSTANDING, "understand-requirements", "Understand Requirements",
          "Read and understand all requirements. Ask clarifying questions if needed."),
    _item(_S.UNDERSTANDING, "identify-ambiguities", "Identify Ambiguities",
          "Identify any ambiguities or unclear requirements. Document them for clarification."),
    _item(_S.UNDERSTANDING, "confirm-understanding", "Confirm Understanding",
          "Summarize requirements and approach and confirm them before proceeding."),
    _item(_S.DESIGNING, "create-design-doc", "Create Design Document",
          "Create or update the design document with architecture, approach and alternatives.",
          evidence_required=True),
    _item(_S.DESIGNING, "design-approval", "Get Design Approval",
          "Get approval on the design before starting implementation."),
    _item(_S.DESIGNING, "plan-implementation", "Plan Implementation",
          "Break the implementation into steps. Identify files to create or modify.",
          required=False),
    _item(_S.IMPLEMENTING, "write-code", "Write Production Code",
          "Implement the feature according to the design, following project conventions."),
    _item(_S.IMPLEMENTING, "add-requirement-tags", "Add Requirement Tags",
          "Link code to the requirements it satisfies."),
    _item(_S.IMPLEMENTING, "follow-patterns", "Follow Project Patterns",
          "Follow existing patterns. Check for duplicate functionality before writing new code.",
          required=False),
    _item(_S.TESTING, "create-test-plan", "Create Test Plan",
          "Define test cases and expected results before writing tests."),
    _item(_S.TESTING, "write-tests", "Write Tests",
          "Write unit and integration tests for the change."),
    _item(_S.TESTING, "run-tests", "Run Tests",
          "Run all tests and verify they pass. Fix failing tests before proceeding.",
          evidence_required=True),
    _item(_S.REVIEWING, "run-validation", "Run Validation",
          "Run automated validation and make sure every check passes.",
          evidence_required=True),
    _item(_S.REVIEWING, "code-quality-review", "Code Quality Review",
          "Review code for quality, style and adherence to project conventions."),
    _item(_S.REVIEWING, "requirements-verification", "Verify Requirements",
          "Verify every requirement is satisfied and linked to code."),
    _item(_S.READY_TO_COMMIT, "all-tests-passing", "All Tests Passing",
          "Verify all tests pass with nothing failing or skipped.",
          evidence_required=True),
    _item(_S.READY_TO_COMMIT, "validation-passed", "Validation Passed",
          "Confirm the final validation run is clean."),
    _item(_S.READY_TO_COMMIT, "no-warnings", "No Warnings",
          "Resolve or document remaining warnings.",
          required=False),
)


def items_for_stage(stage: WorkflowStage) -> list[ChecklistItemDefinition]:
    return [item for item in DEFAULT_ITEMS if stage in item.stages]


def _role_item(
    role: str,
    item_id: str,
    title: str,
    description: str,
    *,
    required: bool = True,
) -> ChecklistItemDefinition:
    return ChecklistItemDefinition(
        id=item_id,
        title=title,
        description=description,
        required=required,
        priority="high" if required else "medium",
        stages=(_S.REVIEWING,),
        roles=(role,),
        source="role",
    )


# Specialist review checks, added only when the task carries the role.
ROLE_ITEMS: tuple[ChecklistItemDefinition, ...] = (
    _role_item("security", "security-no-hardcoded-secrets", "No Hardcoded Secrets",
               "No secrets or credentials are hardcoded in the change."),
    _role_item("security", "security-input-validation", "Input Validation",
               "External input is validated and sanitized."),
    _role_item("security", "security-injection", "Injection Prevention",
               "Queries are parameterized; no SQL or command injection paths."),
    _role_item("security", "security-access-control", "Authentication Check",
               "Authentication and authorization are enforced on every new entry point."),
    _role_item("security", "security-password-hashing", "Password Hashing",
               "Passwords are hashed with bcrypt or argon2."),
    _role_item("performance", "performance-async-work", "Expensive Work Off the Hot Path",
               "Expensive operations inside loops run asynchronously or in batches.",
               required=False),
    _role_item("performance", "performance-n-plus-one", "No N+1 Queries",
               "Database access has no N+1 query patterns."),
    _role_item("performance", "performance-caching", "Caching Strategy",
               "A caching strategy is defined where repeated work is expensive.",
               required=False),
    _role_item("performance", "performance-pagination", "Large Result Sets",
               "Large datasets are paginated or streamed.",
               required=False),
)
