"""Database models."""

from waconnect.persistence.models.inbox import Contact, Conversation, Message
from waconnect.persistence.models.integration_log import IntegrationLog
from waconnect.persistence.models.message_template import MessageTemplate
from waconnect.persistence.models.oauth_credential import OAuthCredential
from waconnect.persistence.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus
from waconnect.persistence.models.tenant import Tenant
from waconnect.persistence.models.whatsapp_integration import ConnectionStatus, WhatsAppIntegration
from waconnect.persistence.models.whatsapp_ledger import (
    WhatsAppContact,
    WhatsAppConversation,
    WhatsAppMessage,
    ledger_conversation_id,
)

__all__ = [
    "Tenant",
    "WhatsAppIntegration",
    "ConnectionStatus",
    "OAuthCredential",
    "IntegrationLog",
    "ProvisioningJob",
    "ProvisioningJobStatus",
    "WhatsAppContact",
    "WhatsAppConversation",
    "WhatsAppMessage",
    "ledger_conversation_id",
    "Contact",
    "Conversation",
    "Message",
    "MessageTemplate",
]
