"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union
from uuid import UUID as PyUUID

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


CHAT_VARIANT_TABLES = (
    ('ai_chat_groups', 'ai_chats', 'ai_messages'),
    ('ai_sql_chat_groups', 'ai_sql_chats', 'ai_sql_messages'),
)


def _uuid_pk() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def _updated_at() -> sa.Column:
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def _metadata() -> sa.Column:
    return sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb"))


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create plans table (reference data)
    # ========================================================================
    plans = op.create_table(
        'plans',
        _uuid_pk(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('monthly_price', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('yearly_price', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('features', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    )

    # Ids match the subscription catalog; prices and features are edited in place
    op.bulk_insert(
        plans,
        [
            {'id': PyUUID('a2c06716-8900-4ddf-ac1c-878ec72136c5'), 'name': 'Individual'},
            {'id': PyUUID('43e952ee-ce17-4258-93ed-466386231e20'), 'name': 'Developers'},
            {'id': PyUUID('186774c3-cdb5-441b-8f3b-69b2af59eeef'), 'name': 'Enterprise'},
        ],
    )

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('surname', sa.String(255), nullable=True),
        _metadata(),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('plan_id', UUID(as_uuid=True), nullable=True),
        _created_at(),
        _updated_at(),

        # Foreign key
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], name='fk_users_plan'),
    )

    op.create_index('idx_users_stripe_customer', 'users', ['stripe_customer_id'], postgresql_where=sa.text('stripe_customer_id IS NOT NULL'))

    # ========================================================================
    # Create projects and project_users tables
    # ========================================================================
    op.create_table(
        'projects',
        _uuid_pk(),
        sa.Column('owner_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        _metadata(),
        _created_at(),
        _updated_at(),

        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], name='fk_projects_owner'),
    )

    op.create_index('ix_projects_owner_id', 'projects', ['owner_id'])

    op.create_table(
        'project_users',
        sa.Column('project_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        _created_at(),

        # Constraints
        sa.CheckConstraint("role IN ('owner', 'admin', 'member')", name='ck_project_user_role'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], name='fk_project_users_project', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_project_users_user'),
    )

    op.create_index('idx_project_users_user', 'project_users', ['user_id'])

    # ========================================================================
    # Create token_packs table
    # ========================================================================
    op.create_table(
        'token_packs',
        _uuid_pk(),
        sa.Column('project_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('tokens_purchased', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('remaining_tokens', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('price_paid_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('purchased_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        _updated_at(),
        _metadata(),

        # Constraints
        sa.CheckConstraint('price_paid_minor >= 0', name='ck_token_pack_price_non_negative'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], name='fk_token_packs_project', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_token_packs_user'),
    )

    op.create_index('idx_token_packs_project_active', 'token_packs', ['project_id', 'expires_at', 'purchased_at'])

    # ========================================================================
    # Create token_transactions table (purchase ledger)
    # ========================================================================
    op.create_table(
        'token_transactions',
        _uuid_pk(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('project_id', UUID(as_uuid=True), nullable=False),
        sa.Column('model_key', sa.String(100), nullable=False),
        sa.Column('tokens_added', sa.BigInteger(), nullable=False),
        sa.Column('amount_paid_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('source', sa.String(100), nullable=False),
        sa.Column('stripe_session_id', sa.String(255), nullable=True),
        _metadata(),
        _created_at(),

        # Constraints
        sa.CheckConstraint('tokens_added > 0', name='ck_token_transaction_tokens_positive'),
        sa.UniqueConstraint('stripe_session_id', 'model_key', name='uq_token_transaction_session'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], name='fk_token_transactions_project', ondelete='CASCADE'),
    )

    op.create_index('ix_token_transactions_project_id', 'token_transactions', ['project_id'])
    op.create_index('idx_token_transactions_session', 'token_transactions', ['stripe_session_id'], postgresql_where=sa.text('stripe_session_id IS NOT NULL'))

    # ========================================================================
    # Create token_usage_logs table (consumption ledger)
    # ========================================================================
    op.create_table(
        'token_usage_logs',
        _uuid_pk(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('project_id', UUID(as_uuid=True), nullable=False),
        sa.Column('token_pack_id', UUID(as_uuid=True), nullable=True),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        _created_at(),

        # Constraints
        sa.CheckConstraint('tokens_used >= 0', name='ck_token_usage_non_negative'),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], name='fk_token_usage_logs_project', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['token_pack_id'], ['token_packs.id'], name='fk_token_usage_logs_pack', ondelete='SET NULL'),
    )

    op.create_index('ix_token_usage_logs_token_pack_id', 'token_usage_logs', ['token_pack_id'])
    op.create_index('idx_token_usage_logs_project_created', 'token_usage_logs', ['project_id', 'created_at'])

    # ========================================================================
    # Create assistant chat tables (one triple per variant)
    # ========================================================================
    for group_table, chat_table, message_table in CHAT_VARIANT_TABLES:
        op.create_table(
            group_table,
            _uuid_pk(),
            sa.Column('project_id', UUID(as_uuid=True), nullable=False),
            sa.Column('user_id', UUID(as_uuid=True), nullable=False),
            sa.Column('name', sa.String(255), nullable=False),
            _metadata(),
            _created_at(),
        )
        op.create_index(f'ix_{group_table}_project_id', group_table, ['project_id'])

        op.create_table(
            chat_table,
            _uuid_pk(),
            sa.Column('project_id', UUID(as_uuid=True), nullable=False),
            sa.Column('user_id', UUID(as_uuid=True), nullable=False),
            sa.Column('group_id', UUID(as_uuid=True), nullable=True),
            sa.Column('title', sa.String(255), nullable=False),
            sa.Column('total_tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
            _created_at(),
            _updated_at(),

            sa.ForeignKeyConstraint(['group_id'], [f'{group_table}.id'], name=f'fk_{chat_table}_group', ondelete='SET NULL'),
        )
        op.create_index(f'ix_{chat_table}_project_id', chat_table, ['project_id'])

        op.create_table(
            message_table,
            _uuid_pk(),
            sa.Column('chat_id', UUID(as_uuid=True), nullable=False),
            sa.Column('user_id', UUID(as_uuid=True), nullable=True),
            sa.Column('role', sa.String(10), nullable=False),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
            sa.Column('ai_model', sa.String(100), nullable=True),
            _created_at(),

            # Constraints
            sa.CheckConstraint("role IN ('user', 'ai')", name=f'ck_{message_table[:-1]}_role'),
            sa.ForeignKeyConstraint(['chat_id'], [f'{chat_table}.id'], name=f'fk_{message_table}_chat', ondelete='CASCADE'),
        )
        op.create_index(f'ix_{message_table}_chat_id', message_table, ['chat_id'])

    # ========================================================================
    # Create concepts table
    # ========================================================================
    op.create_table(
        'concepts',
        _uuid_pk(),
        sa.Column('project_id', UUID(as_uuid=True), nullable=False),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('group_name', sa.String(100), nullable=True),
        _metadata(),
        _created_at(),
        _updated_at(),

        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], name='fk_concepts_project', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], name='fk_concepts_creator'),
    )

    op.create_index('idx_concepts_project_created', 'concepts', ['project_id', 'created_at'])

    # ========================================================================
    # Create updates table (changelog)
    # ========================================================================
    op.create_table(
        'updates',
        _uuid_pk(),
        sa.Column('author_id', UUID(as_uuid=True), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('tag', sa.String(50), nullable=True),
        sa.Column('version', sa.String(50), nullable=True),
        _created_at(),

        sa.ForeignKeyConstraint(['author_id'], ['users.id'], name='fk_updates_author'),
    )

    op.create_index('idx_updates_created_at', 'updates', ['created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('updates')
    op.drop_table('concepts')
    for group_table, chat_table, message_table in reversed(CHAT_VARIANT_TABLES):
        op.drop_table(message_table)
        op.drop_table(chat_table)
        op.drop_table(group_table)
    op.drop_table('token_usage_logs')
    op.drop_table('token_transactions')
    op.drop_table('token_packs')
    op.drop_table('project_users')
    op.drop_table('projects')
    op.drop_table('users')
    op.drop_table('plans')
