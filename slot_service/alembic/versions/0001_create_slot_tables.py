"""create users, slots and slot windows

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_chain', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('parent_hospital_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
    )
    op.create_index('ix_users_id', 'users', ['id'])

    op.create_table(
        'slots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('location_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('provider_role', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('shape', sa.String(), nullable=False, server_default='legacy'),
        sa.Column('start_time', sa.String(5), nullable=True),
        sa.Column('end_time', sa.String(5), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=True),
        sa.Column('booked', sa.Integer(), nullable=True),
        sa.Column('available_capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('advance_booking_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('updated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )
    op.create_index('ix_slots_id', 'slots', ['id'])
    op.create_index('ix_slots_provider_id', 'slots', ['provider_id'])
    op.create_index('ix_slots_date', 'slots', ['date'])
    op.create_index('idx_slot_provider_date_entity', 'slots', ['provider_id', 'date', 'entity_type'])
    op.create_index('idx_slot_location_date_active', 'slots', ['location_id', 'date', 'is_active'])
    op.create_index('idx_slot_date_entity_active', 'slots',
                    ['date', 'entity_type', 'is_active', 'available_capacity'])
    op.create_index(
        'uq_slots_legacy_window',
        'slots',
        ['provider_id', sa.text('coalesce(location_id, 0)'), 'date', 'entity_type', 'start_time', 'end_time'],
        unique=True,
        postgresql_where=sa.text("is_active AND shape = 'legacy'"),
        sqlite_where=sa.text("is_active AND shape = 'legacy'"),
    )

    op.create_table(
        'slot_windows',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('slot_id', sa.Integer(), sa.ForeignKey('slots.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('end_time', sa.String(5), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('booked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.UniqueConstraint('slot_id', 'start_time', 'end_time', name='_slot_window_uc'),
    )
    op.create_index('ix_slot_windows_id', 'slot_windows', ['id'])
    op.create_index('ix_slot_windows_slot_id', 'slot_windows', ['slot_id'])


def downgrade() -> None:
    op.drop_table('slot_windows')
    op.drop_index('uq_slots_legacy_window', table_name='slots')
    op.drop_table('slots')
    op.drop_table('users')
