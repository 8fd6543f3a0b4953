"""Models package."""

from .user import User
from .subscription import SubscriptionPlan, Subscription
from .credit_transaction import CreditCost, CreditTransaction
from .generation_request import GenerationRequest
