from datetime import timedelta

import pytest
from sqlalchemy import func, select

from mentor_app import db
from mentor_app.errors import Conflict, ValidationError
from mentor_app.forms.services import create_form, update_form
from mentor_app.models import FormFieldResponse, FormResponse, User, utc_now
from mentor_app.responses.services import (
    delete_response, review_response, review_transitions, save_response,
)
from mentor_app.roles import get_role


@pytest.fixture()
def people(ctx):
    author = User(email="ct@example.com", name="Class Teacher", role_id=get_role("class-teacher").id)
    respondent = User(email="cand@example.com", name="Candidate", role_id=get_role("candidate").id)
    db.session.add_all([author, respondent])
    db.session.commit()
    return author, respondent


@pytest.fixture()
def form(people):
    author, _ = people
    return create_form(author, {
        "title": "Application",
        "status": "active",
        "sections": [{
            "title": "About you",
            "fields": [
                {"field_name": "full_name", "field_label": "Full name", "field_type": "text", "is_required": True},
                {"field_name": "phone", "field_label": "Phone", "field_type": "phone"},
                {"field_name": "topics", "field_label": "Topics", "field_type": "checkbox",
                 "options": ["math", "art"]},
            ],
        }],
    })


def row_counts():
    responses = db.session.execute(select(func.count(FormResponse.id))).scalar()
    answers = db.session.execute(select(func.count(FormFieldResponse.id))).scalar()
    return responses, answers


def test_submit_with_missing_required_field_writes_nothing(people, form):
    _, respondent = people
    with pytest.raises(ValidationError) as excinfo:
        save_response(form, respondent, {"phone": "0912345678"}, status="submitted")
    assert excinfo.value.details == {"missing_fields": ["Full name"]}
    assert row_counts() == (0, 0)


def test_complete_submission_persists_each_field_once(people, form):
    _, respondent = people
    response = save_response(
        form, respondent,
        {"full_name": "Lin", "phone": "0912-345-678", "topics": ["math", "art"]},
        status="submitted",
    )
    assert response.submission_status == "submitted"
    assert response.submitted_at is not None
    assert response.submission_no == 1
    values = {r.field.field_name: r.value for r in response.field_responses}
    assert values == {"full_name": "Lin", "phone": "0912-345-678", "topics": ["math", "art"]}
    assert row_counts() == (1, 3)


def test_saving_a_draft_twice_keeps_one_row_per_field(people, form):
    _, respondent = people
    save_response(form, respondent, {"full_name": "First"})
    response = save_response(form, respondent, {"full_name": "Second"})
    rows = db.session.execute(
        select(FormFieldResponse).where(FormFieldResponse.response_id == response.id)
    ).scalars().all()
    assert [r.field_value for r in rows] == ["Second"]
    assert row_counts() == (1, 1)


def test_resubmitting_replaces_answers(people, form):
    _, respondent = people
    save_response(form, respondent, {"full_name": "Lin", "topics": ["math"]}, status="submitted")
    response = save_response(form, respondent, {"full_name": "Lin Mei"}, status="submitted")
    assert {r.field.field_name: r.value for r in response.field_responses} == {"full_name": "Lin Mei"}


def test_submitted_response_cannot_go_back_to_draft(people, form):
    _, respondent = people
    save_response(form, respondent, {"full_name": "Lin"}, status="submitted")
    with pytest.raises(Conflict):
        save_response(form, respondent, {"full_name": "Lin"}, status="draft")


def test_invalid_answers_report_every_field(people, form):
    _, respondent = people
    with pytest.raises(ValidationError) as excinfo:
        save_response(form, respondent, {"phone": "123", "topics": ["cooking"]})
    assert set(excinfo.value.details["field_errors"]) == {"phone", "topics"}


def test_unknown_field_is_rejected(people, form):
    _, respondent = people
    with pytest.raises(ValidationError) as excinfo:
        save_response(form, respondent, {"nickname": "x"})
    assert excinfo.value.details == {"unknown_fields": ["nickname"]}


def test_answers_may_be_a_list_of_rows(people, form):
    _, respondent = people
    field_id = next(f.id for f in form.active_fields if f.field_name == "full_name")
    response = save_response(form, respondent, [{"field_id": field_id, "field_value": "Lin"}])
    assert [r.field_value for r in response.field_responses] == ["Lin"]


def test_closed_form_and_passed_deadline(people, form):
    _, respondent = people
    update_form(form, {"submission_deadline": (utc_now() - timedelta(hours=1)).isoformat()})
    with pytest.raises(ValidationError):
        save_response(form, respondent, {"full_name": "Lin"})
    update_form(form, {"submission_deadline": None, "status": "inactive"})
    with pytest.raises(ValidationError):
        save_response(form, respondent, {"full_name": "Lin"})


def test_multiple_submissions_are_numbered(people, form):
    _, respondent = people
    update_form(form, {"allow_multiple_submissions": True})
    first = save_response(form, respondent, {"full_name": "One"}, status="submitted")
    second = save_response(form, respondent, {"full_name": "Two"}, status="submitted")
    assert (first.submission_no, second.submission_no) == (1, 2)
    assert first.id != second.id


def test_review_flow(people, form):
    author, respondent = people
    response = save_response(form, respondent, {"full_name": "Lin"}, status="submitted")

    review_response(response, author, status="reviewed", notes="Looks fine")
    assert response.submission_status == "reviewed"
    assert response.reviewed_by == author.id
    assert response.review_notes == "Looks fine"

    with pytest.raises(Conflict):
        review_response(response, author, status="submitted")
    with pytest.raises(ValidationError):
        review_response(response, author, status="archived")

    review_response(response, author, status="approved")
    assert response.submission_status == "approved"

    # Reviewed responses are locked for the respondent
    with pytest.raises(Conflict):
        save_response(form, respondent, {"full_name": "Changed"}, status="submitted")
    with pytest.raises(Conflict):
        delete_response(response)
    delete_response(response, by_editor=True)
    assert row_counts() == (0, 0)


def test_drafts_cannot_be_reviewed(people, form):
    author, respondent = people
    response = save_response(form, respondent, {"full_name": "Lin"})
    with pytest.raises(Conflict):
        review_response(response, author, status="reviewed")


def test_extra_review_transitions_from_config(people, form, ctx):
    author, respondent = people
    ctx.config["EXTRA_REVIEW_TRANSITIONS"] = {"submitted": ["rejected"]}
    assert review_transitions()["submitted"] == ["reviewed", "rejected"]
    response = save_response(form, respondent, {"full_name": "Lin"}, status="submitted")
    review_response(response, author, status="rejected")
    assert response.submission_status == "rejected"
