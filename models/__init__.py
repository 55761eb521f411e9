from .account import Account  # noqa: F401
from .payments import BillingStateEntry, ProcessedWebhookEvent  # noqa: F401
from .subscription import Invoice, PaymentMethod, SubscriptionRecord  # noqa: F401
