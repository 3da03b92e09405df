"""
Sample data

seed_if_empty() fills an empty store with a small school whose records
reference each other by id. It only acts when the students collection is
empty, never rewrites a record that already exists, and writes students
last so an interrupted run is picked up again on the next start.
"""
import logging
from typing import Dict, List, Tuple

from database import MediumError
from schemas import Assignment, Behavior, Invoice, InvoiceItem, Mark, Student, Subject, Teacher
from store import EntityStore

logger = logging.getLogger(__name__)


def sample_teachers() -> List[Teacher]:
    return [
        Teacher(
            id="teacher-1",
            name="Dr. Robert Wilson",
            email="r.wilson@example.com",
            subjects=["subject-1", "subject-3"],
            department="Science",
            phoneNumber="+1234567893",
            qualification="PhD in Mathematics",
        ),
        Teacher(
            id="teacher-2",
            name="Prof. Emma Davis",
            email="e.davis@example.com",
            subjects=["subject-2"],
            department="Humanities",
            phoneNumber="+1234567894",
            qualification="Masters in English",
        ),
    ]


def sample_subjects() -> List[Subject]:
    return [
        Subject(id="subject-1", name="Mathematics", code="MATH101", teacherId="teacher-1",
                description="Fundamentals of algebra, calculus, and geometry"),
        Subject(id="subject-2", name="English", code="ENG101", teacherId="teacher-2",
                description="Grammar, literature, and writing skills"),
        Subject(id="subject-3", name="Science", code="SCI101", teacherId="teacher-1",
                description="Basics of physics, chemistry, and biology"),
    ]


def sample_students() -> List[Student]:
    return [
        Student(id="student-1", name="John Doe", email="john.doe@example.com", className="10A",
                rollNumber="1001", guardianName="Jane Doe", guardianContact="+1234567890",
                attendancePercentage=92, behaviorScore=4.2),
        Student(id="student-2", name="Sarah Smith", email="sarah.smith@example.com", className="10B",
                rollNumber="1002", guardianName="Robert Smith", guardianContact="+1234567891",
                attendancePercentage=86, behaviorScore=3.8),
        Student(id="student-3", name="Michael Johnson", email="michael.j@example.com", className="10C",
                rollNumber="1003", guardianName="Linda Johnson", guardianContact="+1234567892",
                attendancePercentage=78, behaviorScore=3.3),
    ]


def sample_marks() -> List[Mark]:
    return [
        Mark(id="mark-1", studentId="student-1", subjectId="subject-1", term="Term 1",
             score=85, maxScore=100, date="2023-01-15", type="Exam"),
        Mark(id="mark-2", studentId="student-1", subjectId="subject-2", term="Term 1",
             score=78, maxScore=100, date="2023-01-22", type="Quiz"),
        Mark(id="mark-3", studentId="student-2", subjectId="subject-1", term="Term 1",
             score=92, maxScore=100, date="2023-01-15", type="Exam"),
    ]


def sample_behaviors() -> List[Behavior]:
    return [
        Behavior(id="behavior-1", studentId="student-1", date="2023-02-10", category="Attendance",
                 score=5, maxScore=5, notes="Excellent attendance", reportedBy="teacher-1"),
        Behavior(id="behavior-2", studentId="student-1", date="2023-02-15", category="Discipline",
                 score=4, maxScore=5, notes="Good classroom behavior", reportedBy="teacher-2"),
        Behavior(id="behavior-3", studentId="student-2", date="2023-02-12", category="Leadership",
                 score=5, maxScore=5, notes="Led group project effectively", reportedBy="teacher-1"),
    ]


def sample_assignments() -> List[Assignment]:
    return [
        Assignment(id="assignment-1", title="Algebra Problem Set", subjectId="subject-1",
                   description="Complete problems 1-20 in Chapter 5", dueDate="2023-03-15",
                   classAssigned="10A", teacherId="teacher-1"),
        Assignment(id="assignment-2", title="Essay on Shakespeare", subjectId="subject-2",
                   description="Write a 1000-word essay on Macbeth", dueDate="2023-03-20",
                   classAssigned="10B", teacherId="teacher-2"),
    ]


def sample_invoices() -> List[Invoice]:
    return [
        Invoice(id="invoice-1", studentId="student-1", invoiceNumber="INV-0001", term="Term 1",
                dueDate="2023-01-31", status="paid", paymentReference="REF-000001",
                items=[InvoiceItem(description="Tuition", amount=450),
                       InvoiceItem(description="Library fee", amount=25)]),
        Invoice(id="invoice-2", studentId="student-2", invoiceNumber="INV-0002", term="Term 1",
                dueDate="2023-01-31", status="pending",
                items=[InvoiceItem(description="Tuition", amount=450)]),
    ]


async def seed_if_empty(store: EntityStore) -> bool:
    """Populate the store with sample data when it has no students.

    Returns True when the sample data was written.
    """
    # raw rows count too: a legacy student the schema rejects still means "not empty"
    try:
        if not await store.students.is_empty():
            return False
    except MediumError as e:
        logger.error("Could not read students, skipping seed: %s", e)
        return False

    batches = [
        (store.teachers, sample_teachers()),
        (store.subjects, sample_subjects()),
        (store.marks, sample_marks()),
        (store.behaviors, sample_behaviors()),
        (store.assignments, sample_assignments()),
        (store.invoices, sample_invoices()),
        (store.students, sample_students()),
    ]
    written = 0
    try:
        for collection, records in batches:
            written += await collection.add_missing(records)
    except MediumError as e:
        logger.error("Seeding stopped after %s records: %s", written, e)
        return False
    logger.info("Seeded entity store with %s sample records", written)
    return True


# collection -> (field, target collection)
REFERENCES: Dict[str, List[Tuple[str, str]]] = {
    "teachers": [("subjects", "subjects")],
    "subjects": [("teacherId", "teachers")],
    "marks": [("studentId", "students"), ("subjectId", "subjects")],
    "behaviors": [("studentId", "students"), ("reportedBy", "teachers")],
    "assignments": [("subjectId", "subjects"), ("teacherId", "teachers")],
    "invoices": [("studentId", "students")],
}


async def dangling_references(store: EntityStore) -> List[Dict[str, str]]:
    """Soft references whose target id does not exist.

    Deletes never cascade, so removing a subject leaves its marks and
    assignments pointing at nothing; this lists those records.
    """
    ids = {}
    for name, collection in store.collections.items():
        ids[name] = {r.id for r in await collection.list()}

    missing = []
    for name, refs in REFERENCES.items():
        for record in await store.collection(name).list():
            for field, target in refs:
                value = getattr(record, field)
                values = value if isinstance(value, list) else [value]
                for ref in values:
                    if ref and ref not in ids[target]:
                        missing.append({
                            "collection": name,
                            "id": record.id,
                            "field": field,
                            "target": target,
                            "missing": ref,
                        })
    return missing
