import uuid
from datetime import datetime, timezone

from flask_login import UserMixin

from . import db


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands datetimes back naive; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id():
    return str(uuid.uuid4())


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ==========================================
# ROLES / USERS
# ==========================================

class Role(db.Model):
    __tablename__ = "roles"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), unique=True, nullable=False)
    display_name = db.Column(db.String(64), nullable=False)
    color = db.Column(db.String(16))
    # Rank: lower is more privileged (root = 0)
    order = db.Column(db.Integer, unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "color": self.color,
            "order": self.order,
        }


class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(128))
    # Scopes manager visibility over students
    region = db.Column(db.String(64))
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"))
    avatar_url = db.Column(db.String(512))
    last_active = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    role = db.relationship("Role", lazy="joined")

    def get_id(self):
        return str(self.id)

    @property
    def role_name(self):
        return self.role.name if self.role else None

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "region": self.region,
            "avatar_url": self.avatar_url,
            "last_active": isoformat(self.last_active),
            "created_at": isoformat(self.created_at),
            "role": self.role.to_dict() if self.role else None,
        }


# ==========================================
# STUDENTS
# ==========================================

class Student(db.Model):
    __tablename__ = "students"
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(128), nullable=False)
    gender = db.Column(db.String(16))
    grade = db.Column(db.String(16))
    class_name = db.Column("class", db.String(32))
    region = db.Column(db.String(64), index=True)
    student_type = db.Column(db.String(32))
    is_disadvantaged = db.Column(db.Boolean, default=False)
    email = db.Column(db.String(255), unique=True)
    family_background = db.Column(db.Text)
    cultural_disadvantage_factors = db.Column(db.Text)
    personal_background_notes = db.Column(db.Text)
    registration_motivation = db.Column(db.Text)
    account_username = db.Column(db.String(64))
    additional_info = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    # JSON key -> attribute; "class" is reserved in Python
    WRITABLE_FIELDS = {
        "name": "name",
        "gender": "gender",
        "grade": "grade",
        "class": "class_name",
        "region": "region",
        "student_type": "student_type",
        "is_disadvantaged": "is_disadvantaged",
        "email": "email",
        "family_background": "family_background",
        "cultural_disadvantage_factors": "cultural_disadvantage_factors",
        "personal_background_notes": "personal_background_notes",
        "registration_motivation": "registration_motivation",
        "account_username": "account_username",
        "additional_info": "additional_info",
    }

    def to_dict(self):
        data = {key: getattr(self, attr) for key, attr in self.WRITABLE_FIELDS.items()}
        data["id"] = self.id
        data["created_at"] = isoformat(self.created_at)
        data["updated_at"] = isoformat(self.updated_at)
        return data


class TeacherStudentAccess(db.Model):
    __tablename__ = "teacher_student_access"
    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = db.Column(db.String(36), db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("teacher_id", "student_id", name="uq_teacher_student"),
    )


# ==========================================
# FORMS
# ==========================================

class Form(db.Model):
    __tablename__ = "forms"
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    form_type = db.Column(db.String(16), nullable=False, default="form")  # form, task
    status = db.Column(db.String(16), nullable=False, default="draft")  # draft, active, inactive, archived
    is_required = db.Column(db.Boolean, default=False)
    created_by = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"))
    submission_deadline = db.Column(db.DateTime)
    allow_multiple_submissions = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    creator = db.relationship("User", foreign_keys=[created_by])
    sections = db.relationship(
        "FormSection", backref="form", lazy=True,
        order_by="FormSection.order", cascade="all, delete-orphan",
    )
    fields = db.relationship(
        "FormField", backref="form", lazy=True,
        order_by="FormField.display_order", cascade="all, delete-orphan",
    )
    access_grants = db.relationship("UserFormAccess", backref="form", lazy=True, cascade="all, delete-orphan")
    responses = db.relationship("FormResponse", backref="form", lazy=True, cascade="all, delete-orphan")

    @property
    def active_fields(self):
        return [f for f in self.fields if f.is_active]

    def is_past_deadline(self, now=None):
        deadline = as_utc(self.submission_deadline)
        if deadline is None:
            return False
        return (now or utc_now()) > deadline


class FormSection(db.Model):
    __tablename__ = "form_sections"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    title = db.Column(db.String(255))
    description = db.Column(db.Text)
    order = db.Column(db.Integer, default=0)

    fields = db.relationship("FormField", backref="section", lazy=True, order_by="FormField.display_order")


class FormField(db.Model):
    __tablename__ = "form_fields"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey("form_sections.id", ondelete="SET NULL"))
    field_name = db.Column(db.String(64), nullable=False)
    field_label = db.Column(db.String(255), nullable=False)
    field_type = db.Column(db.String(32), nullable=False, default="text")
    display_order = db.Column(db.Integer, default=0)
    is_required = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    placeholder = db.Column(db.String(255))
    help_text = db.Column(db.Text)
    validation_rules = db.Column(db.JSON)
    min_length = db.Column(db.Integer)
    max_length = db.Column(db.Integer)
    # Student column this answer maps onto, e.g. "grade"
    student_field_mapping = db.Column(db.String(64))
    # Opaque folder reference in the external drive
    upload_folder_id = db.Column(db.String(128))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    options = db.relationship(
        "FormFieldOption", backref="field", lazy=True,
        order_by="FormFieldOption.display_order", cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("form_id", "field_name", name="uq_form_field_name"),
    )

    def active_options(self, option_type="standard"):
        return [o for o in self.options if o.is_active and o.option_type == option_type]


class FormFieldOption(db.Model):
    __tablename__ = "form_field_options"
    id = db.Column(db.Integer, primary_key=True)
    field_id = db.Column(db.Integer, db.ForeignKey("form_fields.id", ondelete="CASCADE"), nullable=False)
    option_value = db.Column(db.String(255), nullable=False)
    option_label = db.Column(db.String(255), nullable=False)
    option_type = db.Column(db.String(16), nullable=False, default="standard")  # standard, grid_row, grid_column
    display_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.UniqueConstraint("field_id", "option_type", "option_value", name="uq_field_option_value"),
    )


class UserFormAccess(db.Model):
    """A grant on a form, keyed by role (bulk) or by user (task assignment)."""

    __tablename__ = "user_form_access"
    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"))
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"))
    access_type = db.Column(db.String(8), nullable=False, default="read")  # read, edit
    is_active = db.Column(db.Boolean, default=True)
    granted_by = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"))
    granted_at = db.Column(db.DateTime, default=utc_now)
    expires_at = db.Column(db.DateTime)

    role = db.relationship("Role")
    user = db.relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        db.UniqueConstraint("form_id", "role_id", name="uq_form_role_grant"),
        db.UniqueConstraint("form_id", "user_id", name="uq_form_user_grant"),
        db.CheckConstraint(
            "(role_id IS NULL AND user_id IS NOT NULL) OR (role_id IS NOT NULL AND user_id IS NULL)",
            name="ck_grant_single_target",
        ),
    )

    def is_current(self, now=None):
        if not self.is_active:
            return False
        expires = as_utc(self.expires_at)
        return expires is None or expires > (now or utc_now())

    def to_dict(self):
        return {
            "id": self.id,
            "form_id": self.form_id,
            "role_id": self.role_id,
            "user_id": self.user_id,
            "access_type": self.access_type,
            "is_active": self.is_active,
            "granted_by": self.granted_by,
            "granted_at": isoformat(self.granted_at),
            "expires_at": isoformat(self.expires_at),
        }


# ==========================================
# RESPONSES
# ==========================================

class FormResponse(db.Model):
    __tablename__ = "form_responses"
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    form_id = db.Column(db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"), nullable=False, index=True)
    respondent_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), index=True)
    # Always 1 unless the form allows multiple submissions
    submission_no = db.Column(db.Integer, nullable=False, default=1)
    submission_status = db.Column(db.String(16), nullable=False, default="draft")
    submitted_at = db.Column(db.DateTime)
    reviewed_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"))
    review_notes = db.Column(db.Text)
    meta = db.Column("metadata", db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    respondent = db.relationship("User", foreign_keys=[respondent_id])
    field_responses = db.relationship(
        "FormFieldResponse", backref="response", lazy=True, cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("form_id", "respondent_id", "submission_no", name="uq_response_per_respondent"),
    )


class FormFieldResponse(db.Model):
    __tablename__ = "form_field_responses"
    id = db.Column(db.Integer, primary_key=True)
    response_id = db.Column(db.String(36), db.ForeignKey("form_responses.id", ondelete="CASCADE"), nullable=False)
    field_id = db.Column(db.Integer, db.ForeignKey("form_fields.id", ondelete="CASCADE"), nullable=False)
    field_value = db.Column(db.Text)
    field_values = db.Column(db.JSON(none_as_null=True))
    created_at = db.Column(db.DateTime, default=utc_now)

    field = db.relationship("FormField")

    __table_args__ = (
        db.UniqueConstraint("response_id", "field_id", name="uq_response_field"),
        db.CheckConstraint(
            "(field_value IS NULL AND field_values IS NOT NULL) OR (field_value IS NOT NULL AND field_values IS NULL)",
            name="ck_single_value_column",
        ),
    )

    @property
    def value(self):
        return self.field_values if self.field_values is not None else self.field_value
