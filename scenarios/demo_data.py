"""
Demo Data Loader
================

Creates sample staff sessions and sample school records for
demonstrating row filtering, column masking and auditing.

- One session per staff role (ADMIN_USER, TEACHER_USER, ...)
- A handful of students, teachers, courses and enrollments held in
  memory; the access-control service decides which of them each role
  may see
"""

from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from config import get_settings
from core.identity import SQLSessionStore
from models.database import get_session, init_db
from models.domain import Role
from models.entities import UserSession

DEMO_STAFF = [
    # (user id, role, department)
    ("ADMIN_USER", Role.ADMIN, "ADMINISTRATION"),
    ("TEACHER_USER", Role.TEACHER, "MATHEMATICS"),
    ("COUNSELOR_USER", Role.COUNSELOR, "STUDENT_SERVICES"),
    ("REGISTRAR_USER", Role.REGISTRAR, "REGISTRY"),
    ("READ_ONLY_USER", Role.READ_ONLY, None),
    ("TEST_USER", Role.OTHER, None),
]

SAMPLE_RECORDS: Dict[str, List[dict]] = {
    "STUDENTS": [
        {"student_id": 2001, "name": "Alice Martin",
         "sin": "123456789", "address": "12 Elm Street", "parent_phone": "555-0101", "gpa": 3.7},
        {"student_id": 2002, "name": "Bruno Silva",
         "sin": "234567891", "address": "48 Oak Avenue", "parent_phone": "555-0102", "gpa": 3.1},
        {"student_id": 2003, "name": "Chloe Nguyen",
         "sin": "345678912", "address": "7 Pine Road", "parent_phone": "555-0103", "gpa": 3.9},
    ],
    "TEACHERS": [
        {"teacher_id": 1001, "name": "Daniel Roy", "department_id": 10, "sin": "456789123", "salary": 72000},
        {"teacher_id": 1002, "name": "Emma Clark", "department_id": 20, "sin": "567891234", "salary": 69000},
    ],
    "DEPARTMENTS": [
        {"department_id": 10, "name": "Mathematics"},
        {"department_id": 20, "name": "Sciences"},
    ],
    "COURSES": [
        {"course_id": 3001, "title": "Algebra I", "teacher_id": 1001},
        {"course_id": 3002, "title": "Biology", "teacher_id": 1002},
    ],
    "ENROLLMENTS": [
        {"student_id": 2001, "course_id": 3001, "grade": "A", "final_score": 91},
        {"student_id": 2002, "course_id": 3001, "grade": "B", "final_score": 84},
        {"student_id": 2002, "course_id": 3002, "grade": "B+", "final_score": 88},
        {"student_id": 2003, "course_id": 3002, "grade": "A", "final_score": 95},
    ],
}


def load_demo_data(session_factory: Optional[sessionmaker] = None) -> Dict[str, str]:
    """
    Open one session per demo staff member.

    Existing demo sessions are removed first so loading is idempotent.

    Returns:
        Mapping of user id -> session token
    """
    settings = get_settings()
    init_db(session_factory.kw.get("bind") if session_factory else None)

    with get_session(session_factory) as session:
        session.query(UserSession).filter(
            UserSession.user_id.in_([user_id for user_id, _, _ in DEMO_STAFF])
        ).delete(synchronize_session=False)

    store = SQLSessionStore(session_factory)
    ttl = timedelta(minutes=settings.session_ttl_minutes)
    tokens = {}
    for user_id, role, department in DEMO_STAFF:
        info = store.open(user_id, role, department=department, ttl=ttl)
        tokens[user_id] = info.token
    return tokens


def sample_rows(resource: str) -> List[dict]:
    return [dict(row) for row in SAMPLE_RECORDS.get(resource.upper(), [])]
