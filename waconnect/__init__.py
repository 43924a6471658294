"""WhatsApp Business onboarding and message ingestion service."""
