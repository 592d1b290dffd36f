from grantflow.services.notifications.audience import AudienceResolver, Recipient, StoreAudienceResolver
from grantflow.services.notifications.delivery import (
    ChannelSender,
    DeliveryResult,
    EmailSender,
    InAppSender,
    default_senders,
    deliver_job,
    deliver_pending,
    requeue_retryable_jobs,
)
from grantflow.services.notifications.fanout import FanOutResult, fan_out_outbox, fan_out_pending
from grantflow.services.notifications.outbox import OutboxEvent, audience, enqueue_event

__all__ = [
    "AudienceResolver",
    "ChannelSender",
    "DeliveryResult",
    "EmailSender",
    "FanOutResult",
    "InAppSender",
    "OutboxEvent",
    "Recipient",
    "StoreAudienceResolver",
    "audience",
    "default_senders",
    "deliver_job",
    "deliver_pending",
    "enqueue_event",
    "fan_out_outbox",
    "fan_out_pending",
    "requeue_retryable_jobs",
]
