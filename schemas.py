"""
Entity Schemas

One pydantic model per collection kept by the entity store. A model is the
canonical shape of a stored record: JSON keys are the camelCase names the
portal front end reads and writes, and older spellings of the same fields are
accepted on input and migrated to the canonical key.

Collections:
- students
- teachers
- subjects
- marks
- behaviors
- assignments
- invoices

Identity and Portal describe the session side (who is signed in, which portal
the session belongs to) and are never stored as collections.
"""
from enum import Enum
from typing import Dict, List, Literal, Optional
import datetime as dt

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(None, description="Opaque key, unique within its collection")


class StudentDocuments(BaseModel):
    birthCertificate: Optional[str] = None
    previousSchoolRecords: Optional[str] = None
    medicalRecords: Optional[str] = None
    idPhotocopy: Optional[str] = None
    guardianIdPhotocopy: Optional[str] = None


class Student(Record):
    name: str = Field(..., min_length=1, description="Full name of student")
    email: str = Field(..., description="Contact email")
    className: str = Field(
        ...,
        validation_alias=AliasChoices("class", "className"),
        serialization_alias="class",
        description="Class label, e.g. 10A",
    )
    rollNumber: str = Field(..., description="Roll number within the school, e.g. 10A-001")
    guardianName: Optional[str] = None
    guardianContact: Optional[str] = None
    attendancePercentage: float = Field(0, ge=0, le=100)
    behaviorScore: float = Field(0, ge=0)
    profileImage: Optional[str] = None
    address: Optional[str] = None
    phoneNumber: Optional[str] = None
    dateOfBirth: Optional[dt.date] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    bloodGroup: Optional[str] = None
    admissionDate: Optional[dt.date] = None
    status: Optional[Literal["active", "suspended", "graduated"]] = None
    allergies: Optional[List[str]] = None
    medicalConditions: Optional[List[str]] = None
    nationality: Optional[str] = None
    religion: Optional[str] = None
    transportRoute: Optional[str] = None
    emergencyContact: Optional[str] = None
    documents: Optional[StudentDocuments] = None


class Teacher(Record):
    name: str = Field(..., min_length=1)
    email: str
    subjects: List[str] = Field(default_factory=list, description="Subject ids taught")
    department: Optional[str] = None
    status: Literal["active", "inactive", "on-leave"] = "active"
    phoneNumber: Optional[str] = None
    qualification: Optional[str] = None
    joinDate: Optional[dt.date] = None
    employeeId: Optional[str] = None
    address: Optional[str] = None
    emergencyContact: Optional[str] = None
    specialization: Optional[List[str]] = None
    documents: Optional[Dict[str, str]] = None
    profileImage: Optional[str] = None


class Subject(Record):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, description="Unique subject code, e.g. MATH101")
    teacherId: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("teacherId", "teacher"),
        description="Reference to teacher id",
    )
    description: Optional[str] = None
    credits: Optional[int] = Field(None, ge=0)
    schedule: Optional[str] = None
    duration: Optional[str] = None


class Mark(Record):
    studentId: str = Field(..., description="Reference to student id")
    subjectId: str = Field(..., description="Reference to subject id")
    term: str = Field(..., validation_alias=AliasChoices("term", "semester"))
    score: float = Field(..., ge=0, validation_alias=AliasChoices("score", "marksObtained"))
    maxScore: float = Field(..., gt=0, validation_alias=AliasChoices("maxScore", "totalMarks"))
    date: dt.date
    type: str = Field(
        "Exam",
        validation_alias=AliasChoices("type", "examType"),
        description="Exam | Quiz | Assignment | Mid-Term | Final | Project | Practical",
    )
    grade: Optional[str] = None
    notes: Optional[str] = Field(None, validation_alias=AliasChoices("notes", "comments"))

    @model_validator(mode="after")
    def _score_within_max(self):
        if self.score > self.maxScore:
            raise ValueError("score cannot exceed maxScore")
        return self


BehaviorCategory = Literal[
    "Attendance",
    "Punctuality",
    "Discipline",
    "Leadership",
    "Teamwork",
    "Communication",
    "Participation",
    "Homework",
    "Classroom Behavior",
]

_TONE_CATEGORIES = {"Positive", "Negative", "Neutral"}


class Behavior(Record):
    studentId: str = Field(..., description="Reference to student id")
    category: BehaviorCategory
    tone: Optional[Literal["positive", "negative", "neutral"]] = None
    score: float = Field(..., ge=0)
    maxScore: float = Field(5, gt=0)
    date: dt.date
    notes: Optional[str] = None
    reportedBy: Optional[str] = Field(None, description="Reference to teacher id")

    @model_validator(mode="before")
    @classmethod
    def _migrate_tone_category(cls, data):
        # Some screens recorded the tone in the category slot.
        if isinstance(data, dict) and data.get("category") in _TONE_CATEGORIES:
            data = dict(data)
            data.setdefault("tone", data["category"].lower())
            data["category"] = "Classroom Behavior"
        return data

    @model_validator(mode="after")
    def _score_within_max(self):
        if self.score > self.maxScore:
            raise ValueError("score cannot exceed maxScore")
        return self


class Assignment(Record):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    subjectId: str = Field(..., description="Reference to subject id")
    dueDate: dt.date
    classAssigned: str = Field(..., description="Class label the assignment is for")
    teacherId: Optional[str] = None
    maxScore: Optional[float] = Field(None, gt=0)
    status: Optional[Literal["draft", "published", "completed"]] = None


class InvoiceItem(BaseModel):
    """
    Line item within an invoice (embedded in Invoice)
    Not a collection by itself.
    """
    description: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)


class Invoice(Record):
    studentId: str = Field(..., description="Reference to student id")
    dueDate: dt.date
    term: str
    status: Literal["pending", "paid", "overdue", "cancelled"] = "pending"
    items: List[InvoiceItem] = Field(default_factory=list)
    amount: float = Field(0, ge=0, description="Total of the line items, always derived")
    invoiceNumber: Optional[str] = None
    paymentReference: Optional[str] = None
    paymentMethod: Optional[str] = None
    paymentDate: Optional[dt.date] = None
    createdAt: Optional[dt.datetime] = None
    updatedAt: Optional[dt.datetime] = None

    @model_validator(mode="after")
    def _derive_amount(self):
        self.amount = round(sum(item.amount for item in self.items), 2)
        return self


COLLECTIONS: Dict[str, type] = {
    "students": Student,
    "teachers": Teacher,
    "subjects": Subject,
    "marks": Mark,
    "behaviors": Behavior,
    "assignments": Assignment,
    "invoices": Invoice,
}


class Portal(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"
    UNKNOWN = "unknown"


UserRole = Literal["student", "admin", "school_admin", "super_admin", "teacher"]


class Identity(BaseModel):
    """Authenticated user as supplied by the identity provider"""
    id: str
    email: str
    role: UserRole
    schoolId: Optional[str] = None
    name: Optional[str] = None

    @property
    def portal(self) -> Portal:
        return Portal.STUDENT if self.role == "student" else Portal.ADMIN
