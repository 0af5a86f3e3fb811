from .order import Order, OrderItem  # noqa: F401
from .order_transition import OrderTransition  # noqa: F401
from .dispute import Dispute  # noqa: F401
from .payout import Payout, PayoutItem, PayoutAttempt  # noqa: F401
from .review_item import ReviewQueueItem  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
from .idempotency_key import IdempotencyKey  # noqa: F401
from .platform_event import PlatformEvent  # noqa: F401
from .job_run import JobRun  # noqa: F401
