from app.tasks.campaigns import dispatch_due_campaigns
from app.tasks.delivery import deliver_batch

__all__ = ["deliver_batch", "dispatch_due_campaigns"]
