from flask import current_app, request
from flask_login import current_user
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from . import students_bp
from .. import cache, db
from ..access import check_student, check_student_create, enforce, visible_students
from ..api_utils import api_success, as_bool, get_or_404, json_body, page_args, require_fields
from ..decorators import api_login_required
from ..errors import Conflict, ValidationError
from ..forms.validation import EMAIL_RE
from ..models import Student, TeacherStudentAccess

REGIONS_CACHE_KEY = "students_regions"


def _apply_student(student, data):
    for key, attr in Student.WRITABLE_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        if key == "is_disadvantaged":
            value = as_bool(value)
        elif key == "additional_info":
            if value is not None and not isinstance(value, dict):
                raise ValidationError("additional_info must be an object")
        elif value is not None:
            if not isinstance(value, (str, int, float)):
                raise ValidationError(f"{key} must be a string")
            value = str(value).strip() or None
        if key == "email" and value:
            value = value.lower()
            if not EMAIL_RE.match(value):
                raise ValidationError("email is not a valid address")
        if key == "name" and not value:
            raise ValidationError("name cannot be empty")
        setattr(student, attr, value)


def _commit_student():
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("A student with this email already exists")
    cache.delete(REGIONS_CACHE_KEY)


def _check_email_free(email, exclude_id=None):
    if not email:
        return
    stmt = select(Student.id).where(func.lower(Student.email) == email.strip().lower())
    if exclude_id:
        stmt = stmt.where(Student.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise Conflict("A student with this email already exists")


@students_bp.route("", methods=["GET"])
@api_login_required
def list_students():
    stmt = visible_students(current_user)
    for key, column in (("region", Student.region), ("grade", Student.grade),
                        ("class", Student.class_name), ("student_type", Student.student_type)):
        value = (request.args.get(key) or "").strip()
        if value:
            stmt = stmt.where(column == value)
    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(Student.name.ilike(like), Student.email.ilike(like)))

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    limit, offset = page_args()
    students = db.session.execute(
        stmt.order_by(Student.name, Student.id).limit(limit).offset(offset)
    ).scalars().all()
    return api_success([s.to_dict() for s in students], {"total": total, "limit": limit, "offset": offset})


@students_bp.route("", methods=["POST"])
@api_login_required
def create_student():
    data = json_body()
    require_fields(data, "name")
    enforce(check_student_create(current_user, (data.get("region") or "").strip() or None))
    _check_email_free(data.get("email"))
    student = Student()
    _apply_student(student, data)
    db.session.add(student)
    _commit_student()
    current_app.logger.info("Student %s created by %s", student.id, current_user.id)
    return api_success(student.to_dict(), status=201)


def region_list():
    regions = cache.get(REGIONS_CACHE_KEY)
    if regions is None:
        regions = list(db.session.execute(
            select(Student.region).where(Student.region.isnot(None), Student.region != "").distinct().order_by(Student.region)
        ).scalars())
        cache.set(REGIONS_CACHE_KEY, regions, timeout=300)
    return regions


@students_bp.route("/regions", methods=["GET"])
@api_login_required
def regions():
    return api_success(region_list())


@students_bp.route("/<student_id>", methods=["GET"])
@api_login_required
def get_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    decision = enforce(check_student(current_user, student, "read"))
    data = student.to_dict()
    data["access_type"] = decision.access_type
    return api_success(data)


@students_bp.route("/<student_id>", methods=["PUT"])
@api_login_required
def update_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    enforce(check_student(current_user, student, "edit"))
    data = json_body()
    if "region" in data:
        # Moving a student must not take it out of the editor's reach
        enforce(check_student_create(current_user, (data.get("region") or "").strip() or None))
    if data.get("email"):
        _check_email_free(data["email"], exclude_id=student.id)
    _apply_student(student, data)
    _commit_student()
    return api_success(student.to_dict())


@students_bp.route("/<student_id>", methods=["DELETE"])
@api_login_required
def delete_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    enforce(check_student(current_user, student, "delete"))
    db.session.execute(delete(TeacherStudentAccess).where(TeacherStudentAccess.student_id == student.id))
    db.session.delete(student)
    db.session.commit()
    cache.delete(REGIONS_CACHE_KEY)
    current_app.logger.info("Student %s deleted by %s", student_id, current_user.id)
    return api_success({"id": student_id, "deleted": True})
