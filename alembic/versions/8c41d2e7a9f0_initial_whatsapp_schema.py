"""initial_whatsapp_schema

Revision ID: 8c41d2e7a9f0
Revises:
Create Date: 2026-10-18 09:12:44.512301

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8c41d2e7a9f0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_tenants_id', 'tenants', ['id'])

    op.create_table(
        'whatsapp_integrations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('business_id', sa.String(length=64), nullable=True),
        sa.Column('waba_id', sa.String(length=64), nullable=True),
        sa.Column('phone_number_id', sa.String(length=64), nullable=True),
        sa.Column('display_phone_number', sa.String(length=50), nullable=True),
        sa.Column('connection_status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('resolution_strategy', sa.String(length=100), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('account_status', sa.String(length=100), nullable=True),
        sa.Column('quality_rating', sa.String(length=50), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_whatsapp_integrations_id', 'whatsapp_integrations', ['id'])
    op.create_index('ix_whatsapp_integrations_tenant_id', 'whatsapp_integrations', ['tenant_id'], unique=True)
    op.create_index('ix_whatsapp_integrations_waba_id', 'whatsapp_integrations', ['waba_id'])
    op.create_index('ix_whatsapp_integrations_phone_number_id', 'whatsapp_integrations', ['phone_number_id'])

    op.create_table(
        'oauth_credentials',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False, server_default='meta'),
        sa.Column('business_id', sa.String(length=64), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('token_type', sa.String(length=50), nullable=False, server_default='bearer'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('scopes', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('nonce', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'nonce', name='uq_oauth_credentials_tenant_nonce'),
    )
    op.create_index('ix_oauth_credentials_id', 'oauth_credentials', ['id'])
    op.create_index('ix_oauth_credentials_tenant_id', 'oauth_credentials', ['tenant_id'])

    op.create_table(
        'whatsapp_integration_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('step', sa.String(length=100), nullable=False),
        sa.Column('strategy', sa.String(length=100), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_whatsapp_integration_logs_id', 'whatsapp_integration_logs', ['id'])
    op.create_index('ix_whatsapp_integration_logs_tenant_id', 'whatsapp_integration_logs', ['tenant_id'])
    op.create_index('ix_whatsapp_integration_logs_step', 'whatsapp_integration_logs', ['step'])
    op.create_index('ix_whatsapp_integration_logs_created_at', 'whatsapp_integration_logs', ['created_at'])

    op.create_table(
        'whatsapp_provisioning_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('business_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='running'),
        sa.Column('attempts_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('waba_id', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('deadline_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_whatsapp_provisioning_jobs_id', 'whatsapp_provisioning_jobs', ['id'])
    op.create_index('ix_whatsapp_provisioning_jobs_tenant_id', 'whatsapp_provisioning_jobs', ['tenant_id'])

    op.create_table(
        'whatsapp_contacts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('phone_number', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='active'),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'phone_number', name='uq_whatsapp_contacts_tenant_phone'),
    )
    op.create_index('ix_whatsapp_contacts_id', 'whatsapp_contacts', ['id'])
    op.create_index('ix_whatsapp_contacts_tenant_id', 'whatsapp_contacts', ['tenant_id'])

    op.create_table(
        'whatsapp_conversations',
        sa.Column('id', sa.String(length=128), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('contact_phone', sa.String(length=50), nullable=False),
        sa.Column('phone_number_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='open'),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_whatsapp_conversations_tenant_id', 'whatsapp_conversations', ['tenant_id'])

    op.create_table(
        'whatsapp_messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('message_id', sa.String(length=255), nullable=False),
        sa.Column('conversation_id', sa.String(length=128), sa.ForeignKey('whatsapp_conversations.id'), nullable=False),
        sa.Column('phone_number_id', sa.String(length=64), nullable=True),
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('from_phone', sa.String(length=50), nullable=True),
        sa.Column('to_phone', sa.String(length=50), nullable=True),
        sa.Column('message_type', sa.String(length=50), nullable=False),
        sa.Column('content', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'message_id', name='uq_whatsapp_messages_tenant_message'),
    )
    op.create_index('ix_whatsapp_messages_id', 'whatsapp_messages', ['id'])
    op.create_index('ix_whatsapp_messages_tenant_id', 'whatsapp_messages', ['tenant_id'])
    op.create_index('ix_whatsapp_messages_message_id', 'whatsapp_messages', ['message_id'])
    op.create_index('ix_whatsapp_messages_conversation_id', 'whatsapp_messages', ['conversation_id'])

    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='active'),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'phone', name='uq_contacts_tenant_phone'),
    )
    op.create_index('ix_contacts_id', 'contacts', ['id'])
    op.create_index('ix_contacts_tenant_id', 'contacts', ['tenant_id'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id'), nullable=False),
        sa.Column('channel', sa.String(length=50), nullable=False, server_default='whatsapp'),
        sa.Column('external_id', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('phone_number_id', sa.String(length=64), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'channel', 'external_id', name='uq_conversations_tenant_channel_external'),
    )
    op.create_index('ix_conversations_id', 'conversations', ['id'])
    op.create_index('ix_conversations_tenant_id', 'conversations', ['tenant_id'])
    op.create_index('ix_conversations_contact_id', 'conversations', ['contact_id'])
    op.create_index('ix_conversations_external_id', 'conversations', ['external_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('conversation_id', sa.Integer(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('external_message_id', sa.String(length=255), nullable=False),
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('content_type', sa.String(length=50), nullable=False),
        sa.Column('delivery_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'external_message_id', name='uq_messages_tenant_external'),
    )
    op.create_index('ix_messages_id', 'messages', ['id'])
    op.create_index('ix_messages_tenant_id', 'messages', ['tenant_id'])
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_external_message_id', 'messages', ['external_message_id'])

    op.create_table(
        'whatsapp_message_templates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('template_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('language', sa.String(length=20), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='PENDING'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_whatsapp_message_templates_id', 'whatsapp_message_templates', ['id'])
    op.create_index('ix_whatsapp_message_templates_tenant_id', 'whatsapp_message_templates', ['tenant_id'])
    op.create_index('ix_whatsapp_message_templates_template_id', 'whatsapp_message_templates', ['template_id'])


def downgrade() -> None:
    op.drop_table('whatsapp_message_templates')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('contacts')
    op.drop_table('whatsapp_messages')
    op.drop_table('whatsapp_conversations')
    op.drop_table('whatsapp_contacts')
    op.drop_table('whatsapp_provisioning_jobs')
    op.drop_table('whatsapp_integration_logs')
    op.drop_table('oauth_credentials')
    op.drop_table('whatsapp_integrations')
    op.drop_table('tenants')
