"""create billing tables

Revision ID: a1f3c9e2d4b6
Revises:
Create Date: 2025-06-10 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1f3c9e2d4b6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'families',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='PARENT'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('family_id', sa.String(length=36), sa.ForeignKey('families.id', ondelete='SET NULL'), nullable=True),
    )
    op.create_index('ux_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_family_id', 'users', ['family_id'])

    op.create_table(
        'students',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('family_id', sa.String(length=36), sa.ForeignKey('families.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_students_family_id', 'students', ['family_id'])

    op.create_table(
        'courses',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
    )

    op.create_table(
        'services',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
    )

    op.create_table(
        'fee_structures',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False, server_default='MONTHLY'),
        sa.Column('course_id', sa.String(length=36), sa.ForeignKey('courses.id', ondelete='CASCADE'), nullable=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=True),
        sa.CheckConstraint('(course_id IS NULL) <> (service_id IS NULL)', name='ck_fee_structures_one_target'),
    )
    op.create_index('ux_fee_structures_course_id', 'fee_structures', ['course_id'], unique=True)
    op.create_index('ux_fee_structures_service_id', 'fee_structures', ['service_id'], unique=True)

    op.create_table(
        'student_subscriptions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('course_id', sa.String(length=36), sa.ForeignKey('courses.id', ondelete='CASCADE'), nullable=True),
        sa.Column('service_id', sa.String(length=36), sa.ForeignKey('services.id', ondelete='CASCADE'), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.CheckConstraint('(course_id IS NULL) <> (service_id IS NULL)', name='ck_student_subscriptions_one_target'),
    )
    op.create_index('ix_student_subscriptions_student_id', 'student_subscriptions', ['student_id'])

    op.create_table(
        'student_fee_allocations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('student_id', sa.String(length=36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('month', sa.Date(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('paid_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('student_id', 'month', 'year', name='uq_allocations_student_month_year'),
    )
    op.create_index('ix_student_fee_allocations_student_id', 'student_fee_allocations', ['student_id'])
    op.create_index('ix_student_fee_allocations_status', 'student_fee_allocations', ['status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False, server_default='email'),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default='medium'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('family_id', sa.String(length=36), sa.ForeignKey('families.id', ondelete='SET NULL'), nullable=True),
    )
    op.create_index('ix_notifications_status', 'notifications', ['status'])
    op.create_index('ix_notifications_family_id', 'notifications', ['family_id'])


def downgrade():
    op.drop_index('ix_notifications_family_id', table_name='notifications')
    op.drop_index('ix_notifications_status', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_student_fee_allocations_status', table_name='student_fee_allocations')
    op.drop_index('ix_student_fee_allocations_student_id', table_name='student_fee_allocations')
    op.drop_table('student_fee_allocations')
    op.drop_index('ix_student_subscriptions_student_id', table_name='student_subscriptions')
    op.drop_table('student_subscriptions')
    op.drop_index('ux_fee_structures_service_id', table_name='fee_structures')
    op.drop_index('ux_fee_structures_course_id', table_name='fee_structures')
    op.drop_table('fee_structures')
    op.drop_table('services')
    op.drop_table('courses')
    op.drop_index('ix_students_family_id', table_name='students')
    op.drop_table('students')
    op.drop_index('ix_users_family_id', table_name='users')
    op.drop_index('ux_users_email', table_name='users')
    op.drop_table('users')
    op.drop_table('families')
