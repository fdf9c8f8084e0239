"""
Database models - import all models here so Alembic can discover them.
"""
from intakewire.models.organization import Organization
from intakewire.models.contact import Contact
from intakewire.models.lead import Lead
from intakewire.models.interaction import Interaction
from intakewire.models.message import Message
from intakewire.models.webhook import WebhookEndpoint, WebhookDelivery
from intakewire.models.followup import FollowupSequence, FollowupJob
from intakewire.models.experiment import ExperimentAssignment
from intakewire.models.event_log import EventLog

__all__ = [
    "Organization",
    "Contact",
    "Lead",
    "Interaction",
    "Message",
    "WebhookEndpoint",
    "WebhookDelivery",
    "FollowupSequence",
    "FollowupJob",
    "ExperimentAssignment",
    "EventLog",
]
