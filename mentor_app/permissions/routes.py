from flask import current_app
from flask_login import current_user
from sqlalchemy import select

from . import permissions_bp
from .. import db
from ..access import check_assignment_view, enforce
from ..api_utils import api_success, get_or_404, json_body, require_fields
from ..decorators import allow_list_required, api_login_required
from ..errors import ValidationError
from ..grants import reconcile_student_access
from ..models import Student, TeacherStudentAccess, User


@permissions_bp.route("/assign", methods=["POST"])
@allow_list_required("grant_admin", "Only administrators may assign students")
def assign_students():
    """Make the teacher's student set exactly ``student_ids``."""
    data = json_body()
    require_fields(data, "teacher_id")
    student_ids = data.get("student_ids")
    if not isinstance(student_ids, list):
        raise ValidationError("student_ids must be a list")
    result = reconcile_student_access(data["teacher_id"], student_ids)
    current_app.logger.info(
        "%s reassigned students of teacher %s: %s", current_user.id, data["teacher_id"], result
    )
    return api_success(result, {"teacher_id": data["teacher_id"], "assigned": len(set(student_ids))})


@permissions_bp.route("/assigned/students/<teacher_id>", methods=["GET"])
@api_login_required
def assigned_students(teacher_id):
    teacher = get_or_404(User, teacher_id, "Teacher not found")
    enforce(check_assignment_view(current_user, teacher.id))
    students = db.session.execute(
        select(Student)
        .join(TeacherStudentAccess, TeacherStudentAccess.student_id == Student.id)
        .where(TeacherStudentAccess.teacher_id == teacher.id)
        .order_by(Student.name, Student.id)
    ).scalars().all()
    return api_success([s.to_dict() for s in students], {"total": len(students), "teacher_id": teacher.id})
