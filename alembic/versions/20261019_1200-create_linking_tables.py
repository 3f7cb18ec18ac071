"""Create tenant, user, CRM link and messaging instance tables

Revision ID: create_linking_tables
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'create_linking_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('contact_email', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenants_name', 'tenants', ['name'])

    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column(
            'role',
            sa.Enum('ADMIN', 'TENANT_ADMIN', 'MEMBER', name='userrole'),
            nullable=False,
        ),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'crm_links',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),

        # External CRM identifiers
        sa.Column('company_id', sa.String(), nullable=False),
        sa.Column('location_id', sa.String(), nullable=False),
        sa.Column('external_user_id', sa.String(), nullable=True),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('location_name', sa.String(), nullable=True),

        # OAuth credentials
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('last_refreshed_at', sa.DateTime(), nullable=True),

        # Lifecycle
        sa.Column('claimed_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_crm_links_tenant_id', 'crm_links', ['tenant_id'])
    op.create_index('ix_crm_links_company_id', 'crm_links', ['company_id'])
    op.create_index('ix_crm_links_location_id', 'crm_links', ['location_id'])
    # At most one live link per location
    op.create_index(
        'uq_crm_links_active_location',
        'crm_links',
        ['location_id'],
        unique=True,
        postgresql_where=sa.text('revoked_at IS NULL'),
        sqlite_where=sa.text('revoked_at IS NULL'),
    )

    op.create_table(
        'messaging_instances',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('crm_link_id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('instance_name', sa.String(), nullable=False),
        sa.Column('gateway_name', sa.String(), nullable=False),
        sa.Column(
            'state',
            sa.Enum('CREATED', 'CONNECTING', 'CONNECTED', 'DISCONNECTED', name='connectionstate'),
            nullable=False,
        ),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('qr_code', sa.Text(), nullable=True),
        sa.Column('pairing_code', sa.String(), nullable=True),
        sa.Column('last_reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('is_stale', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('stale_since', sa.DateTime(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        sa.Column('disconnected_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['crm_link_id'], ['crm_links.id']),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_name'),
        sa.UniqueConstraint('tenant_id', 'instance_name', name='uq_messaging_instances_tenant_name'),
    )
    op.create_index('ix_messaging_instances_crm_link_id', 'messaging_instances', ['crm_link_id'])
    op.create_index('ix_messaging_instances_tenant_id', 'messaging_instances', ['tenant_id'])


def downgrade() -> None:
    op.drop_index('ix_messaging_instances_tenant_id', table_name='messaging_instances')
    op.drop_index('ix_messaging_instances_crm_link_id', table_name='messaging_instances')
    op.drop_table('messaging_instances')

    op.drop_index('uq_crm_links_active_location', table_name='crm_links')
    op.drop_index('ix_crm_links_location_id', table_name='crm_links')
    op.drop_index('ix_crm_links_company_id', table_name='crm_links')
    op.drop_index('ix_crm_links_tenant_id', table_name='crm_links')
    op.drop_table('crm_links')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_tenant_id', table_name='users')
    op.drop_table('users')

    op.drop_index('ix_tenants_name', table_name='tenants')
    op.drop_table('tenants')

    sa.Enum(name='connectionstate').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='userrole').drop(op.get_bind(), checkfirst=True)
