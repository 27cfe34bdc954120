"""
School Policy
=============

Standard access-control configuration for the school records system.

Resources:
- STUDENTS: personal records (SIN, ADDRESS, PARENT_PHONE, GPA are sensitive)
- TEACHERS: staff records (SIN, SALARY are sensitive)
- DEPARTMENTS, COURSES: reference data
- ENROLLMENTS: grades (GRADE, FINAL_SCORE are sensitive)

Role matrix (R=read, I=insert, U=update, D=delete, f=filtered to owned courses,
or for STUDENTS to students enrolled in owned courses, -=denied):

    +------------+----------+----------+-------------+---------+-------------+
    | Role       | STUDENTS | TEACHERS | DEPARTMENTS | COURSES | ENROLLMENTS |
    +------------+----------+----------+-------------+---------+-------------+
    | ADMIN      | RIUD     | RIUD     | RIUD        | RIUD    | RIUD        |
    | TEACHER    | R(f)     | R        | R           | RIU(f)  | RIU(f)      |
    | COUNSELOR  | RIU      | R        | R           | R       | RIU         |
    | REGISTRAR  | RIU      | R        | R           | RIU     | RIU         |
    | READ_ONLY  | R        | R        | R           | R       | -           |
    +------------+----------+----------+-------------+---------+-------------+

Roles without a rule (OTHER) are denied by default.
"""

from typing import Dict, Iterable, List

from core.predicates import MembersOfOwned, OwnedRows, StaticOwnershipLookup
from core.registry import PolicyRegistry
from models.domain import (
    ALL_OPERATIONS, AuditRequirement, ColumnRule, ColumnTreatment, Denied, Filtered,
    MaskStyle, Operation, PolicyRule, ResourceDescriptor, Role, TimeWindow, Unrestricted
)
from .demo_data import SAMPLE_RECORDS

STUDENTS = "STUDENTS"
TEACHERS = "TEACHERS"
DEPARTMENTS = "DEPARTMENTS"
COURSES = "COURSES"
ENROLLMENTS = "ENROLLMENTS"

READ = frozenset({Operation.READ})
READ_WRITE = frozenset({Operation.READ, Operation.INSERT, Operation.UPDATE})

# Teacher 1001 (TEACHER_USER) teaches course 3001
DEMO_COURSE_OWNERSHIP: Dict[str, List[int]] = {
    "TEACHER_USER": [3001],
}


def _audit_all(requirement: AuditRequirement):
    return tuple((op, requirement) for op in Operation)


RESOURCES = [
    ResourceDescriptor(
        name=STUDENTS,
        sensitive_columns=frozenset({"SIN", "ADDRESS", "PARENT_PHONE", "GPA"}),
        audit=_audit_all(AuditRequirement.always()),
        description="Student personal records"
    ),
    ResourceDescriptor(
        name=TEACHERS,
        sensitive_columns=frozenset({"SIN", "SALARY"}),
        audit=_audit_all(AuditRequirement.on_columns("SIN", "SALARY")),
        description="Teaching staff records"
    ),
    ResourceDescriptor(
        name=DEPARTMENTS,
        audit=_audit_all(AuditRequirement.never()),
        description="Academic departments"
    ),
    ResourceDescriptor(
        name=COURSES,
        audit=_audit_all(AuditRequirement.never()),
        description="Course catalogue"
    ),
    ResourceDescriptor(
        name=ENROLLMENTS,
        sensitive_columns=frozenset({"GRADE", "FINAL_SCORE"}),
        audit=_audit_all(AuditRequirement.always()),
        description="Course enrollments and grades"
    ),
]


def _rules() -> Iterable[PolicyRule]:
    owned_courses = Filtered(OwnedRows("course_id"))
    all_resources = [r.name for r in RESOURCES]

    for resource in all_resources:
        yield PolicyRule(resource, ALL_OPERATIONS, Role.ADMIN, Unrestricted())

    # Read-only: everything except grades
    for resource in all_resources:
        if resource != ENROLLMENTS:
            yield PolicyRule(resource, READ, Role.READ_ONLY, Unrestricted())
    yield PolicyRule(ENROLLMENTS, READ, Role.READ_ONLY, Denied())

    # Teacher: own courses only
    yield PolicyRule(STUDENTS, READ, Role.TEACHER, Filtered(MembersOfOwned("student_id")))
    yield PolicyRule(TEACHERS, READ, Role.TEACHER, Unrestricted())
    yield PolicyRule(DEPARTMENTS, READ, Role.TEACHER, Unrestricted())
    yield PolicyRule(COURSES, READ_WRITE, Role.TEACHER, owned_courses)
    yield PolicyRule(ENROLLMENTS, READ_WRITE, Role.TEACHER, owned_courses)
    yield PolicyRule(STUDENTS, frozenset({Operation.DELETE}), Role.TEACHER, Denied())

    # Counselor
    yield PolicyRule(STUDENTS, READ_WRITE, Role.COUNSELOR, Unrestricted())
    yield PolicyRule(ENROLLMENTS, READ_WRITE, Role.COUNSELOR, Unrestricted())
    for resource in (TEACHERS, DEPARTMENTS, COURSES):
        yield PolicyRule(resource, READ, Role.COUNSELOR, Unrestricted())

    # Registrar
    for resource in (STUDENTS, COURSES, ENROLLMENTS):
        yield PolicyRule(resource, READ_WRITE, Role.REGISTRAR, Unrestricted())
    for resource in (TEACHERS, DEPARTMENTS):
        yield PolicyRule(resource, READ, Role.REGISTRAR, Unrestricted())


COLUMN_RULES = [
    ColumnRule(STUDENTS, "SIN", frozenset({Role.ADMIN}), ColumnTreatment.ENCRYPTED_AT_REST),
    ColumnRule(STUDENTS, "ADDRESS", frozenset({Role.ADMIN, Role.COUNSELOR}), mask_style=MaskStyle.PARTIAL),
    ColumnRule(STUDENTS, "GPA", frozenset({Role.ADMIN, Role.TEACHER, Role.COUNSELOR})),
    ColumnRule(TEACHERS, "SIN", frozenset({Role.ADMIN}), ColumnTreatment.ENCRYPTED_AT_REST),
    ColumnRule(TEACHERS, "SALARY", frozenset({Role.ADMIN})),
]

ROLE_WINDOWS = {
    Role.TEACHER: TimeWindow(7, 18, frozenset(range(5))),
    Role.COUNSELOR: TimeWindow(6, 20),
}


def build_school_registry() -> PolicyRegistry:
    """
    Build a registry holding the standard school policy.

    Returns:
        Fully configured PolicyRegistry
    """
    registry = PolicyRegistry()
    for descriptor in RESOURCES:
        registry.register_resource(descriptor)
    registry.register_all(_rules())
    for rule in COLUMN_RULES:
        registry.register_column_rule(rule)
    for role, window in ROLE_WINDOWS.items():
        registry.set_role_window(role, window)
    return registry


def demo_ownership() -> StaticOwnershipLookup:
    """Course ownership plus course -> enrolled students from the sample enrollments."""
    enrolled: Dict[int, List[int]] = {}
    for row in SAMPLE_RECORDS[ENROLLMENTS]:
        enrolled.setdefault(row["course_id"], []).append(row["student_id"])
    return StaticOwnershipLookup(DEMO_COURSE_OWNERSHIP, enrolled)
