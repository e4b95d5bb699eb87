from switchboard.models.auto_reply_rule import AutoReplyRule
from switchboard.models.contact import Contact
from switchboard.models.conversation import Conversation
from switchboard.models.job_queue_item import JobQueueItem
from switchboard.models.message import Message
from switchboard.models.rate_limit_bucket import RateLimitBucket
from switchboard.models.tenant import Tenant
from switchboard.models.tenant_credential import TenantCredential
from switchboard.models.tenant_subscription import TenantSubscription

__all__ = [
    "Tenant",
    "TenantCredential",
    "TenantSubscription",
    "Contact",
    "Conversation",
    "Message",
    "AutoReplyRule",
    "JobQueueItem",
    "RateLimitBucket",
]
