"""initial schema: roles, users, students, forms, grants and responses

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=32), nullable=False),
        sa.Column('display_name', sa.String(length=64), nullable=False),
        sa.Column('color', sa.String(length=16), nullable=True),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.UniqueConstraint('name'),
        sa.UniqueConstraint('order'),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('region', sa.String(length=64), nullable=True),
        sa.Column('role_id', sa.Integer(), nullable=True),
        sa.Column('avatar_url', sa.String(length=512), nullable=True),
        sa.Column('last_active', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id']),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'students',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('gender', sa.String(length=16), nullable=True),
        sa.Column('grade', sa.String(length=16), nullable=True),
        sa.Column('class', sa.String(length=32), nullable=True),
        sa.Column('region', sa.String(length=64), nullable=True),
        sa.Column('student_type', sa.String(length=32), nullable=True),
        sa.Column('is_disadvantaged', sa.Boolean(), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('family_background', sa.Text(), nullable=True),
        sa.Column('cultural_disadvantage_factors', sa.Text(), nullable=True),
        sa.Column('personal_background_notes', sa.Text(), nullable=True),
        sa.Column('registration_motivation', sa.Text(), nullable=True),
        sa.Column('account_username', sa.String(length=64), nullable=True),
        sa.Column('additional_info', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_students_region', 'students', ['region'])

    op.create_table(
        'teacher_student_access',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('teacher_id', sa.String(length=36), nullable=False),
        sa.Column('student_id', sa.String(length=36), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['teacher_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['student_id'], ['students.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('teacher_id', 'student_id', name='uq_teacher_student'),
    )
    op.create_index('ix_teacher_student_access_teacher_id', 'teacher_student_access', ['teacher_id'])
    op.create_index('ix_teacher_student_access_student_id', 'teacher_student_access', ['student_id'])

    op.create_table(
        'forms',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('form_type', sa.String(length=16), nullable=False, server_default='form'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('is_required', sa.Boolean(), nullable=True),
        sa.Column('created_by', sa.String(length=36), nullable=True),
        sa.Column('submission_deadline', sa.DateTime(), nullable=True),
        sa.Column('allow_multiple_submissions', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
    )

    op.create_table(
        'form_sections',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('form_id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('order', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'form_fields',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('form_id', sa.String(length=36), nullable=False),
        sa.Column('section_id', sa.Integer(), nullable=True),
        sa.Column('field_name', sa.String(length=64), nullable=False),
        sa.Column('field_label', sa.String(length=255), nullable=False),
        sa.Column('field_type', sa.String(length=32), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=True),
        sa.Column('is_required', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('placeholder', sa.String(length=255), nullable=True),
        sa.Column('help_text', sa.Text(), nullable=True),
        sa.Column('validation_rules', sa.JSON(), nullable=True),
        sa.Column('min_length', sa.Integer(), nullable=True),
        sa.Column('max_length', sa.Integer(), nullable=True),
        sa.Column('student_field_mapping', sa.String(length=64), nullable=True),
        sa.Column('upload_folder_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['section_id'], ['form_sections.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('form_id', 'field_name', name='uq_form_field_name'),
    )

    op.create_table(
        'form_field_options',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('field_id', sa.Integer(), nullable=False),
        sa.Column('option_value', sa.String(length=255), nullable=False),
        sa.Column('option_label', sa.String(length=255), nullable=False),
        sa.Column('option_type', sa.String(length=16), nullable=False, server_default='standard'),
        sa.Column('display_order', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(['field_id'], ['form_fields.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('field_id', 'option_type', 'option_value', name='uq_field_option_value'),
    )

    op.create_table(
        'user_form_access',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('form_id', sa.String(length=36), nullable=False),
        sa.Column('role_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('access_type', sa.String(length=8), nullable=False, server_default='read'),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('granted_by', sa.String(length=36), nullable=True),
        sa.Column('granted_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['role_id'], ['roles.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['granted_by'], ['users.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('form_id', 'role_id', name='uq_form_role_grant'),
        sa.UniqueConstraint('form_id', 'user_id', name='uq_form_user_grant'),
        sa.CheckConstraint(
            '(role_id IS NULL AND user_id IS NOT NULL) OR (role_id IS NOT NULL AND user_id IS NULL)',
            name='ck_grant_single_target',
        ),
    )
    op.create_index('ix_user_form_access_form_id', 'user_form_access', ['form_id'])

    op.create_table(
        'form_responses',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('form_id', sa.String(length=36), nullable=False),
        sa.Column('respondent_id', sa.String(length=36), nullable=True),
        sa.Column('submission_no', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('submission_status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('reviewed_by', sa.String(length=36), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['respondent_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['reviewed_by'], ['users.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('form_id', 'respondent_id', 'submission_no', name='uq_response_per_respondent'),
    )
    op.create_index('ix_form_responses_form_id', 'form_responses', ['form_id'])
    op.create_index('ix_form_responses_respondent_id', 'form_responses', ['respondent_id'])

    op.create_table(
        'form_field_responses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('response_id', sa.String(length=36), nullable=False),
        sa.Column('field_id', sa.Integer(), nullable=False),
        sa.Column('field_value', sa.Text(), nullable=True),
        sa.Column('field_values', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['response_id'], ['form_responses.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['field_id'], ['form_fields.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('response_id', 'field_id', name='uq_response_field'),
        sa.CheckConstraint(
            '(field_value IS NULL AND field_values IS NOT NULL) OR (field_value IS NOT NULL AND field_values IS NULL)',
            name='ck_single_value_column',
        ),
    )


def downgrade():
    op.drop_table('form_field_responses')
    op.drop_index('ix_form_responses_respondent_id', table_name='form_responses')
    op.drop_index('ix_form_responses_form_id', table_name='form_responses')
    op.drop_table('form_responses')
    op.drop_index('ix_user_form_access_form_id', table_name='user_form_access')
    op.drop_table('user_form_access')
    op.drop_table('form_field_options')
    op.drop_table('form_fields')
    op.drop_table('form_sections')
    op.drop_table('forms')
    op.drop_index('ix_teacher_student_access_student_id', table_name='teacher_student_access')
    op.drop_index('ix_teacher_student_access_teacher_id', table_name='teacher_student_access')
    op.drop_table('teacher_student_access')
    op.drop_index('ix_students_region', table_name='students')
    op.drop_table('students')
    op.drop_table('users')
    op.drop_table('roles')
